from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from appforge.core.config import get_settings
from appforge.core.errors import InternalError


logger = logging.getLogger(__name__)
T = TypeVar("T")

settings = get_settings()
_engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
# Configure bounded asyncpg pools for predictable latency under load.
if not settings.database_url.startswith("sqlite"):
    _engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
    _engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
    _engine_kwargs["pool_timeout"] = 30
    _engine_kwargs["pool_recycle"] = 1800
    if settings.db_statement_timeout_ms > 0:
        _engine_kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.db_statement_timeout_ms))}
        }
else:
    # Give concurrent SQLite writers time to wait on the file lock instead of failing.
    _engine_kwargs["connect_args"] = {"timeout": 30}
engine = create_async_engine(settings.database_url, **_engine_kwargs)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncSession:
    async with SessionLocal() as session:
        yield session


async def init_models() -> None:
    # Create every table known to the ORM; existing tables are left untouched.
    from appforge.domain.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("db_tables_ready url=%s", engine.url.render_as_string(hide_password=True))


async def bounded(awaitable: Awaitable[T], *, operation: str) -> T:
    """Run a storage call under the configured timeout.

    Timeouts and driver errors surface as ``InternalError`` and are never retried here.
    """
    timeout_s = get_settings().db_call_timeout_s
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_s if timeout_s > 0 else None)
    except asyncio.TimeoutError as exc:
        logger.warning("db_call_timeout operation=%s timeout_s=%s", operation, timeout_s)
        raise InternalError("Storage call timed out", details={"operation": operation}) from exc
    except SQLAlchemyError as exc:
        logger.warning("db_call_failed operation=%s error=%s", operation, type(exc).__name__)
        raise InternalError("Storage call failed", details={"operation": operation}) from exc


def pool_stats() -> dict[str, int | None]:
    # Expose DB pool counters for health checks without querying database internals.
    pool = engine.sync_engine.pool
    checked_out_fn = getattr(pool, "checkedout", None)
    checked_in_fn = getattr(pool, "checkedin", None)
    overflow_fn = getattr(pool, "overflow", None)
    size_fn = getattr(pool, "size", None)
    return {
        "size": int(size_fn()) if callable(size_fn) else None,
        "checked_out": int(checked_out_fn()) if callable(checked_out_fn) else None,
        "checked_in": int(checked_in_fn()) if callable(checked_in_fn) else None,
        "overflow": int(overflow_fn()) if callable(overflow_fn) else None,
    }
