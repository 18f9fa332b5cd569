from __future__ import annotations

from dataclasses import dataclass
import logging
import math
import threading
import time
from typing import Callable, Iterator, Protocol
import zlib

from redis.asyncio import Redis


logger = logging.getLogger(__name__)

_LOCK_SHARDS = 64


@dataclass(frozen=True)
class BucketConfig:
    # Capacity per window; the whole capacity is restored once per elapsed window.
    max_requests: int
    window_ms: int


@dataclass
class Bucket:
    tokens: int
    last_refill_ms: int


@dataclass(frozen=True)
class RateLimitDecision:
    # Capture the outcome and retry hints for a rate-limited request.
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int | None = None
    degraded: bool = False


class BucketStore(Protocol):
    def get(self, key: str) -> Bucket | None: ...

    def put(self, key: str, bucket: Bucket) -> None: ...

    def delete(self, key: str) -> None: ...

    def scan(self) -> Iterator[tuple[str, Bucket]]: ...


class InMemoryBucketStore:
    """Process-local bucket map; callers serialise per-key access."""

    def __init__(self) -> None:
        self._buckets: dict[str, Bucket] = {}

    def get(self, key: str) -> Bucket | None:
        return self._buckets.get(key)

    def put(self, key: str, bucket: Bucket) -> None:
        self._buckets[key] = bucket

    def delete(self, key: str) -> None:
        self._buckets.pop(key, None)

    def scan(self) -> Iterator[tuple[str, Bucket]]:
        # Snapshot so eviction can delete while iterating.
        return iter(list(self._buckets.items()))

    def __len__(self) -> int:
        return len(self._buckets)


class _ShardedLocks:
    # Unrelated keys hash to different locks so tenants never serialise on one mutex.
    def __init__(self, shards: int = _LOCK_SHARDS) -> None:
        self._locks = [threading.Lock() for _ in range(shards)]

    def for_key(self, key: str) -> threading.Lock:
        return self._locks[zlib.crc32(key.encode("utf-8")) % len(self._locks)]


def _refill(bucket: Bucket, *, now_ms: int, config: BucketConfig) -> Bucket:
    # Lazy refill: whole windows only, capped at capacity.
    if now_ms < bucket.last_refill_ms:
        bucket.last_refill_ms = now_ms
    elapsed_ms = now_ms - bucket.last_refill_ms
    windows = elapsed_ms // config.window_ms if config.window_ms > 0 else 0
    if windows > 0:
        bucket.tokens = min(config.max_requests, bucket.tokens + windows * config.max_requests)
        bucket.last_refill_ms = now_ms
    return bucket


def _retry_after_seconds(bucket: Bucket, *, now_ms: int, config: BucketConfig) -> int:
    remaining_ms = config.window_ms - (now_ms - bucket.last_refill_ms)
    return max(1, int(math.ceil(remaining_ms / 1000.0)))


class RateLimiter:
    """Token bucket limiter over an injectable store and clock."""

    def __init__(
        self,
        *,
        store: BucketStore | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        # Allow injecting time for deterministic tests.
        self._store = store if store is not None else InMemoryBucketStore()
        self._time_provider = time_provider or time.time
        self._locks = _ShardedLocks()

    @property
    def store(self) -> BucketStore:
        return self._store

    def _now_ms(self) -> int:
        return int(self._time_provider() * 1000)

    async def admit(self, key: str, *, limits: BucketConfig, cost: int = 1) -> RateLimitDecision:
        now_ms = self._now_ms()
        # Read-modify-write never awaits, so the shard lock is held only briefly.
        with self._locks.for_key(key):
            bucket = self._store.get(key)
            if bucket is None:
                bucket = Bucket(tokens=limits.max_requests, last_refill_ms=now_ms)
            bucket = _refill(bucket, now_ms=now_ms, config=limits)
            if bucket.tokens < cost:
                self._store.put(key, bucket)
                return RateLimitDecision(
                    allowed=False,
                    limit=limits.max_requests,
                    remaining=max(0, bucket.tokens),
                    retry_after_seconds=_retry_after_seconds(bucket, now_ms=now_ms, config=limits),
                )
            bucket.tokens -= cost
            self._store.put(key, bucket)
            return RateLimitDecision(
                allowed=True, limit=limits.max_requests, remaining=bucket.tokens
            )

    def sweep_idle_buckets(self, *, idle_ms: int) -> int:
        """Evict buckets whose last refill is older than ``idle_ms``.

        Empty and exhausted buckets are treated alike.
        """
        cutoff = self._now_ms() - idle_ms
        evicted = 0
        for key, bucket in self._store.scan():
            with self._locks.for_key(key):
                current = self._store.get(key)
                if current is not None and current.last_refill_ms < cutoff:
                    self._store.delete(key)
                    evicted += 1
        if evicted:
            logger.info("rate_limit_buckets_evicted count=%s", evicted)
        return evicted


_TOKEN_BUCKET_LUA = r"""
local now_ms = tonumber(ARGV[1])
local max_requests = tonumber(ARGV[2])
local window_ms = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local ttl_s = tonumber(ARGV[5])

local data = redis.call("HMGET", KEYS[1], "tokens", "ts")
local tokens = tonumber(data[1])
local ts = tonumber(data[2])
if tokens == nil then
  tokens = max_requests
  ts = now_ms
end
if now_ms < ts then
  ts = now_ms
end
local windows = math.floor((now_ms - ts) / window_ms)
if windows > 0 then
  tokens = math.min(max_requests, tokens + windows * max_requests)
  ts = now_ms
end

local allowed = 0
local retry_ms = 0
if tokens >= cost then
  tokens = tokens - cost
  allowed = 1
else
  retry_ms = window_ms - (now_ms - ts)
end

redis.call("HSET", KEYS[1], "tokens", tokens, "ts", ts)
redis.call("EXPIRE", KEYS[1], ttl_s)

return {allowed, tokens, retry_ms}
"""


class RedisRateLimiter:
    """Same refill arithmetic, executed atomically in Redis for multi-instance setups.

    Key expiry replaces the sweeper. Backend failures fail open.
    """

    def __init__(
        self,
        *,
        redis: Redis,
        prefix: str,
        idle_evict_s: int,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._redis = redis
        self._prefix = prefix
        self._idle_evict_s = idle_evict_s
        self._time_provider = time_provider or time.time

    async def admit(self, key: str, *, limits: BucketConfig, cost: int = 1) -> RateLimitDecision:
        now_ms = int(self._time_provider() * 1000)
        ttl_s = max(self._idle_evict_s, int(math.ceil(limits.window_ms / 1000.0)))
        try:
            result = await self._redis.eval(
                _TOKEN_BUCKET_LUA,
                1,
                f"{self._prefix}:{key}",
                now_ms,
                limits.max_requests,
                limits.window_ms,
                cost,
                ttl_s,
            )
        except Exception as exc:  # noqa: BLE001 - guard against Redis connectivity failures
            logger.warning("rate_limit_backend_degraded key=%s error=%s", key, type(exc).__name__)
            return RateLimitDecision(
                allowed=True, limit=limits.max_requests, remaining=limits.max_requests, degraded=True
            )
        allowed = int(result[0]) == 1
        remaining = max(0, int(float(result[1])))
        if allowed:
            return RateLimitDecision(allowed=True, limit=limits.max_requests, remaining=remaining)
        retry_ms = int(float(result[2]))
        return RateLimitDecision(
            allowed=False,
            limit=limits.max_requests,
            remaining=remaining,
            retry_after_seconds=max(1, int(math.ceil(retry_ms / 1000.0))),
        )

    def sweep_idle_buckets(self, *, idle_ms: int) -> int:
        # Redis expires idle keys itself.
        return 0

    async def close(self) -> None:
        await self._redis.aclose()
