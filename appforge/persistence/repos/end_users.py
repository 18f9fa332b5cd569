from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from appforge.domain.models import EndUser
from appforge.persistence.guards import tenant_predicate


async def get_by_id(session: AsyncSession, tenant_id: str, user_id: str) -> EndUser | None:
    # Return None for tenant mismatch to keep 404 semantics.
    stmt = select(EndUser).where(tenant_predicate(EndUser, tenant_id), EndUser.id == user_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_by_email(session: AsyncSession, tenant_id: str, email: str) -> EndUser | None:
    stmt = select(EndUser).where(tenant_predicate(EndUser, tenant_id), EndUser.email == email)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_by_reset_hash(session: AsyncSession, tenant_id: str, token_hash: str) -> EndUser | None:
    stmt = select(EndUser).where(
        tenant_predicate(EndUser, tenant_id),
        EndUser.reset_token_hash == token_hash,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def count_for_tenant(session: AsyncSession, tenant_id: str) -> int:
    stmt = select(func.count()).select_from(EndUser).where(tenant_predicate(EndUser, tenant_id))
    result = await session.execute(stmt)
    return int(result.scalar() or 0)


async def create_end_user(
    session: AsyncSession,
    *,
    tenant_id: str,
    email: str,
    password_hash: str,
    display_name: str | None,
    role: str,
) -> EndUser:
    user = EndUser(
        tenant_id=tenant_id,
        email=email,
        password_hash=password_hash,
        display_name=display_name,
        role=role,
        profile_data={},
    )
    session.add(user)
    return user


async def list_end_users(
    session: AsyncSession,
    *,
    tenant_id: str,
    search: str | None = None,
    role: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> tuple[list[EndUser], int]:
    # Newest first so admins see recent signups without paging.
    conditions = [tenant_predicate(EndUser, tenant_id)]
    if search:
        # Literal match: LIKE metacharacters in the search text are escaped.
        escaped = search.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        conditions.append(
            or_(
                EndUser.email.like(pattern, escape="\\"),
                func.lower(EndUser.display_name).like(pattern, escape="\\"),
            )
        )
    if role:
        conditions.append(EndUser.role == role)

    total = await session.execute(select(func.count()).select_from(EndUser).where(*conditions))
    stmt = (
        select(EndUser)
        .where(*conditions)
        .order_by(EndUser.created_at.desc(), EndUser.id.desc())
        .offset(offset)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all()), int(total.scalar() or 0)


async def list_all(session: AsyncSession, tenant_id: str) -> list[EndUser]:
    stmt = (
        select(EndUser)
        .where(tenant_predicate(EndUser, tenant_id))
        .order_by(EndUser.created_at, EndUser.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def user_stats(session: AsyncSession, tenant_id: str, *, active_since: datetime) -> dict[str, int]:
    # Aggregate counters for the admin dashboard.
    scope = tenant_predicate(EndUser, tenant_id)
    total = await session.execute(select(func.count()).select_from(EndUser).where(scope))
    active = await session.execute(
        select(func.count()).select_from(EndUser).where(scope, EndUser.last_login_at >= active_since)
    )
    recent = await session.execute(
        select(func.count()).select_from(EndUser).where(scope, EndUser.created_at >= active_since)
    )
    banned = await session.execute(
        select(func.count()).select_from(EndUser).where(scope, EndUser.banned_at.is_not(None))
    )
    return {
        "total_users": int(total.scalar() or 0),
        "active_users": int(active.scalar() or 0),
        "recent_signups": int(recent.scalar() or 0),
        "banned_users": int(banned.scalar() or 0),
    }
