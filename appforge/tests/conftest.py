from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest

# Point settings at a throwaway SQLite file before any appforge module reads them.
_TEST_DB_DIR = Path(tempfile.mkdtemp(prefix="appforge-tests-"))
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DB_DIR / 'appforge.db'}"
os.environ.setdefault("TOKEN_SECRET", "appforge-test-secret-with-enough-bytes-for-hs256")
os.environ.setdefault("RL_BACKEND", "memory")
os.environ.setdefault("DB_AUTO_CREATE", "false")

from appforge.apps.api.rate_limit import reset_rate_limiter_state  # noqa: E402
from appforge.domain.models import Base  # noqa: E402
from appforge.persistence.db import engine  # noqa: E402


@pytest.fixture(autouse=True)
async def database_schema() -> None:
    # create_all is idempotent; tests isolate by using fresh tenant ids.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def fresh_rate_limiter() -> None:
    # Buckets from one test must not throttle the next.
    reset_rate_limiter_state()
    yield
    reset_rate_limiter_state()
