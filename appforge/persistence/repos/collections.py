from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from appforge.domain.models import Collection, CollectionItem
from appforge.persistence.guards import tenant_predicate


_DIALECT_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


async def get_by_name(session: AsyncSession, tenant_id: str, name: str) -> Collection | None:
    stmt = select(Collection).where(tenant_predicate(Collection, tenant_id), Collection.name == name)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def insert_if_absent(
    session: AsyncSession,
    *,
    collection_id: str,
    tenant_id: str,
    name: str,
    description: str,
    schema_json: list[dict[str, Any]] | None = None,
    settings_json: dict[str, Any] | None = None,
) -> bool:
    """Insert a collection unless ``(tenant_id, name)`` already exists.

    Returns True when this call created the row. Concurrent callers racing on the same
    name resolve on the unique constraint; losers see zero affected rows.
    """
    dialect = session.get_bind().dialect.name
    insert_fn = _DIALECT_INSERTS.get(dialect)
    if insert_fn is None:
        raise RuntimeError(f"Unsupported dialect for collection upsert: {dialect}")
    values = {
        "id": collection_id,
        "tenant_id": tenant_id,
        "name": name,
        "description": description,
        "schema_json": schema_json or [],
        "settings_json": settings_json or {},
    }
    stmt = insert_fn(Collection).values(**values).on_conflict_do_nothing(
        index_elements=["tenant_id", "name"]
    )
    result = await session.execute(stmt)
    return bool(result.rowcount)


async def list_for_tenant(session: AsyncSession, tenant_id: str) -> list[Collection]:
    # Creation order, with id as tie-break, keeps listings deterministic.
    stmt = (
        select(Collection)
        .where(tenant_predicate(Collection, tenant_id))
        .order_by(Collection.created_at, Collection.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def collection_stats(session: AsyncSession, tenant_id: str) -> list[tuple[str, int, Any]]:
    # One grouped query: (name, live item count, latest item update) per collection.
    stmt = (
        select(
            Collection.name,
            func.count(CollectionItem.id),
            func.max(CollectionItem.updated_at),
        )
        .select_from(Collection)
        .outerjoin(
            CollectionItem,
            (CollectionItem.collection_id == Collection.id)
            & (CollectionItem.tenant_id == Collection.tenant_id)
            & (CollectionItem.is_archived.is_(False)),
        )
        .where(tenant_predicate(Collection, tenant_id))
        .group_by(Collection.id, Collection.name, Collection.created_at)
        .order_by(Collection.created_at, Collection.id)
    )
    result = await session.execute(stmt)
    return [(row[0], int(row[1] or 0), row[2]) for row in result.all()]
