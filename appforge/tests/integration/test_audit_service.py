from __future__ import annotations

import asyncio
import time

import pytest

from appforge.core.config import get_settings
from appforge.persistence.db import SessionLocal
from appforge.persistence.repos import audit as audit_repo
from appforge.services.audit import record_event
from appforge.tests.utils.auth import create_test_tenant


async def _events(tenant_id: str) -> list:
    async with SessionLocal() as session:
        rows, _ = await audit_repo.list_events(session, tenant_id=tenant_id)
    return rows


@pytest.mark.asyncio
async def test_record_event_persists_sanitized_details() -> None:
    tenant_id = await create_test_tenant()

    await record_event(
        tenant_id=tenant_id,
        actor_id="u1",
        action="user.login",
        details={"email": "a@b.co", "password": "pw"},
    )

    rows = await _events(tenant_id)
    assert [row.action for row in rows] == ["user.login"]
    assert rows[0].details_json == {"email": "a@b.co", "password": "[REDACTED]"}


@pytest.mark.asyncio
async def test_stalled_audit_write_times_out_without_raising(monkeypatch: pytest.MonkeyPatch) -> None:
    tenant_id = await create_test_tenant()
    monkeypatch.setenv("DB_CALL_TIMEOUT_S", "0.05")
    get_settings.cache_clear()

    async def _stall(*args, **kwargs):
        await asyncio.sleep(5)

    monkeypatch.setattr(audit_repo, "insert_event", _stall)
    try:
        started = time.monotonic()
        await record_event(tenant_id=tenant_id, actor_id=None, action="user.login")
        elapsed = time.monotonic() - started
    finally:
        monkeypatch.undo()
        get_settings.cache_clear()

    assert elapsed < 2
    assert await _events(tenant_id) == []
