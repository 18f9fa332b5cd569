from __future__ import annotations

import asyncio
import logging
from typing import Callable

from fastapi import Request, Response
from redis.asyncio import Redis

from appforge.core.config import get_settings
from appforge.core.errors import RateLimitedError
from appforge.services.rate_limiter import BucketConfig, RateLimiter, RedisRateLimiter


logger = logging.getLogger(__name__)

PRESET_AUTH = "auth"
PRESET_DATA_READ = "data-read"
PRESET_DATA_WRITE = "data-write"
PRESET_STORAGE = "storage"
PRESET_NOTIFY = "notify"
PRESETS = (PRESET_AUTH, PRESET_DATA_READ, PRESET_DATA_WRITE, PRESET_STORAGE, PRESET_NOTIFY)

_rate_limiter: RateLimiter | RedisRateLimiter | None = None


def limits_for_preset(preset: str) -> BucketConfig:
    # Presets resolve through settings so deployments can tune them per environment.
    if preset not in PRESETS:
        raise ValueError(f"Unknown rate limit preset: {preset}")
    settings = get_settings()
    attr = preset.replace("-", "_")
    return BucketConfig(
        max_requests=int(getattr(settings, f"rl_{attr}_max_requests")),
        window_ms=int(getattr(settings, f"rl_{attr}_window_ms")),
    )


def get_rate_limiter() -> RateLimiter | RedisRateLimiter:
    # Cache the limiter so every request shares one bucket store.
    global _rate_limiter
    if _rate_limiter is None:
        settings = get_settings()
        if settings.rl_backend.lower() == "redis":
            _rate_limiter = RedisRateLimiter(
                redis=Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True),
                prefix=settings.rl_redis_prefix,
                idle_evict_s=settings.rl_idle_evict_s,
            )
        else:
            _rate_limiter = RateLimiter()
    return _rate_limiter


def set_rate_limiter(limiter: RateLimiter | RedisRateLimiter) -> None:
    # Swap in a limiter with an injected clock for deterministic tests.
    global _rate_limiter
    _rate_limiter = limiter


def reset_rate_limiter_state() -> None:
    # Drop cached buckets for deterministic test setup.
    global _rate_limiter
    _rate_limiter = None


def rate_limit_key(request: Request, preset: str) -> str:
    # Tenant header when present, otherwise the client address.
    app_id = (request.headers.get("X-App-Id") or "").strip()
    subject = app_id or (request.client.host if request.client else "unknown")
    return f"{subject}:{preset}"


def rate_limited(preset: str) -> Callable:
    """Dependency factory that spends one token from the preset's bucket."""
    limits_for_preset(preset)

    async def _dependency(request: Request, response: Response) -> None:
        settings = get_settings()
        if not settings.rate_limit_enabled:
            return
        limits = limits_for_preset(preset)
        key = rate_limit_key(request, preset)
        decision = await get_rate_limiter().admit(key, limits=limits)
        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        if not decision.allowed:
            retry_after = decision.retry_after_seconds or 1
            logger.info("rate_limited key=%s retry_after_s=%s", key, retry_after)
            raise RateLimitedError(
                f"Rate limit exceeded. Try again in {retry_after}s",
                retry_after_seconds=retry_after,
                details={"preset": preset, "limit": decision.limit, "remaining": decision.remaining},
            )

    return _dependency


async def sweep_idle_buckets_forever(*, interval_s: float, idle_s: float) -> None:
    # Runs from the app lifespan; eviction never depends on request traffic.
    while True:
        await asyncio.sleep(interval_s)
        try:
            get_rate_limiter().sweep_idle_buckets(idle_ms=int(idle_s * 1000))
        except Exception as exc:  # noqa: BLE001 - keep the sweeper alive across failures
            logger.warning("rate_limit_sweep_failed error=%s", type(exc).__name__)
