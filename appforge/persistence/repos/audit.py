from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from appforge.domain.models import AuditEvent
from appforge.persistence.guards import tenant_predicate


async def insert_event(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str | None,
    action: str,
    resource_type: str | None,
    resource_id: str | None,
    request_id: str | None,
    ip_address: str | None,
    details_json: dict[str, Any],
) -> AuditEvent:
    event = AuditEvent(
        tenant_id=tenant_id,
        actor_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        ip_address=ip_address,
        details_json=details_json,
    )
    session.add(event)
    return event


async def list_events(
    session: AsyncSession,
    *,
    tenant_id: str,
    action: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> tuple[list[AuditEvent], int]:
    # Scope all audit queries to a tenant to prevent cross-tenant leakage.
    conditions = [tenant_predicate(AuditEvent, tenant_id)]
    if action:
        conditions.append(AuditEvent.action == action)
    total = await session.execute(select(func.count()).select_from(AuditEvent).where(*conditions))
    stmt = (
        select(AuditEvent)
        .where(*conditions)
        .order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
        .offset(offset)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all()), int(total.scalar() or 0)
