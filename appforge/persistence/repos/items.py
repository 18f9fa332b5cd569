from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import delete, false, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from appforge.domain.models import CollectionItem, utc_now
from appforge.persistence.guards import tenant_predicate


ORDERABLE_COLUMNS = {
    "created_at": CollectionItem.created_at,
    "updated_at": CollectionItem.updated_at,
    "sort_order": CollectionItem.sort_order,
}


@dataclass(frozen=True)
class ItemScope:
    # Resolved tenant/collection plus an optional ownership restriction.
    tenant_id: str
    collection_id: str
    restrict_to_owner: bool = False
    owner_id: str | None = None


@dataclass(frozen=True)
class ItemQuery:
    limit: int
    offset: int
    order_by: str = "created_at"
    descending: bool = True
    # Keys are pre-validated identifiers; values compare as text.
    filters: dict[str, str] = field(default_factory=dict)


def _scope_conditions(scope: ItemScope, *, include_archived: bool = False) -> list[Any]:
    conditions: list[Any] = [
        tenant_predicate(CollectionItem, scope.tenant_id),
        CollectionItem.collection_id == scope.collection_id,
    ]
    if not include_archived:
        conditions.append(CollectionItem.is_archived.is_(False))
    if scope.restrict_to_owner:
        # No identity means nothing can be owned; never match NULL owners.
        if scope.owner_id is None:
            conditions.append(false())
        else:
            conditions.append(CollectionItem.owner_id == scope.owner_id)
    return conditions


async def list_items(
    session: AsyncSession, scope: ItemScope, query: ItemQuery
) -> tuple[list[CollectionItem], int]:
    conditions = _scope_conditions(scope)
    for key, value in query.filters.items():
        # Bound as JSON path + parameter; keys never reach the SQL text unescaped.
        conditions.append(CollectionItem.data[key].as_string() == value)

    total = await session.execute(select(func.count()).select_from(CollectionItem).where(*conditions))
    column = ORDERABLE_COLUMNS[query.order_by]
    # id breaks ties so pages stay stable when timestamps collide.
    ordering = (
        (column.desc(), CollectionItem.id.desc())
        if query.descending
        else (column.asc(), CollectionItem.id.asc())
    )
    stmt = (
        select(CollectionItem)
        .where(*conditions)
        .order_by(*ordering)
        .offset(query.offset)
        .limit(query.limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all()), int(total.scalar() or 0)


async def get_item(session: AsyncSession, scope: ItemScope, item_id: str) -> CollectionItem | None:
    stmt = select(CollectionItem).where(*_scope_conditions(scope), CollectionItem.id == item_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def insert_item(
    session: AsyncSession,
    *,
    tenant_id: str,
    collection_id: str,
    owner_id: str | None,
    data: dict[str, Any],
    sort_order: int | None = None,
) -> CollectionItem:
    item = CollectionItem(
        tenant_id=tenant_id,
        collection_id=collection_id,
        owner_id=owner_id,
        data=data,
        sort_order=sort_order,
        is_archived=False,
    )
    session.add(item)
    return item


async def delete_item(session: AsyncSession, scope: ItemScope, item_id: str) -> int:
    stmt = delete(CollectionItem).where(*_scope_conditions(scope), CollectionItem.id == item_id)
    result = await session.execute(stmt)
    return int(result.rowcount or 0)


async def count_items(session: AsyncSession, *, tenant_id: str, collection_id: str) -> int:
    # Aggregate count; ownership restrictions deliberately do not apply here.
    scope = ItemScope(tenant_id=tenant_id, collection_id=collection_id)
    stmt = select(func.count()).select_from(CollectionItem).where(*_scope_conditions(scope))
    result = await session.execute(stmt)
    return int(result.scalar() or 0)


async def bulk_delete(session: AsyncSession, *, tenant_id: str, collection_id: str, ids: list[str]) -> int:
    scope = ItemScope(tenant_id=tenant_id, collection_id=collection_id)
    stmt = delete(CollectionItem).where(
        *_scope_conditions(scope, include_archived=True),
        CollectionItem.id.in_(ids),
    )
    result = await session.execute(stmt)
    return int(result.rowcount or 0)


async def bulk_archive(session: AsyncSession, *, tenant_id: str, collection_id: str, ids: list[str]) -> int:
    # Already-archived rows are excluded, so repeating the call affects nothing.
    scope = ItemScope(tenant_id=tenant_id, collection_id=collection_id)
    stmt = (
        update(CollectionItem)
        .where(*_scope_conditions(scope), CollectionItem.id.in_(ids))
        .values(is_archived=True, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return int(result.rowcount or 0)


async def referent_exists(
    session: AsyncSession,
    *,
    tenant_id: str,
    collection_id: str,
    field_name: str,
    value: Any,
) -> bool:
    # Archived rows still count as referents.
    scope = ItemScope(tenant_id=tenant_id, collection_id=collection_id)
    conditions = _scope_conditions(scope, include_archived=True)
    if field_name == "id":
        conditions.append(CollectionItem.id == str(value))
    else:
        conditions.append(CollectionItem.data[field_name].as_string() == str(value))
    result = await session.execute(select(CollectionItem.id).where(*conditions).limit(1))
    return result.scalar_one_or_none() is not None


async def list_live_items(session: AsyncSession, *, tenant_id: str, collection_id: str) -> list[CollectionItem]:
    scope = ItemScope(tenant_id=tenant_id, collection_id=collection_id)
    stmt = (
        select(CollectionItem)
        .where(*_scope_conditions(scope))
        .order_by(CollectionItem.created_at, CollectionItem.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
