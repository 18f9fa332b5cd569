from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from appforge.domain.models import Tenant


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalar_one_or_none()


async def create_tenant(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str,
    plan: str = "free",
) -> Tenant:
    # Tenants are provisioned by the builder; this path serves scripts and tests.
    tenant = Tenant(id=tenant_id, name=name, plan=plan, end_user_count=0)
    session.add(tenant)
    return tenant


async def increment_end_user_count(session: AsyncSession, tenant_id: str) -> None:
    # Increment in SQL so concurrent signups never lose an update.
    await session.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id)
        .values(end_user_count=Tenant.end_user_count + 1)
    )
