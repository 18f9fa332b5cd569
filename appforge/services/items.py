from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from appforge.core.config import get_settings
from appforge.core.errors import NotFoundError, ValidationError
from appforge.domain.models import CollectionItem, iso_utc
from appforge.domain.schema import FieldDef, parse_schema, parse_settings
from appforge.persistence.db import bounded
from appforge.persistence.repos import collections as collections_repo
from appforge.persistence.repos import items as items_repo
from appforge.persistence.repos.items import ORDERABLE_COLUMNS, ItemQuery, ItemScope
from appforge.services import collections
from appforge.services.access_policy import Action, Caller, evaluate
from appforge.services.schema_validator import validate


logger = logging.getLogger(__name__)

# Filter keys become JSON path lookups; anything outside this shape is rejected.
SAFE_FILTER_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,63}$")
ORDER_DIRECTIONS = ("asc", "desc")


def to_dict(item: CollectionItem) -> dict[str, Any]:
    # Metadata stays beside the payload; data holds only caller-supplied keys.
    return {
        "id": item.id,
        "data": dict(item.data or {}),
        "owner_id": item.owner_id,
        "sort_order": item.sort_order,
        "created_at": iso_utc(item.created_at),
        "updated_at": iso_utc(item.updated_at),
    }


def _require_object(data: Any) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ValidationError(
            "Item data must be a JSON object",
            violations=[{"field": "data", "code": "type", "message": "Item data must be a JSON object"}],
        )
    return data


def _raise_on_violations(violations: list[dict[str, str]]) -> None:
    if violations:
        raise ValidationError(
            "Validation failed: " + "; ".join(v["message"] for v in violations),
            violations=violations,
        )


def _resolve_list_options(
    *,
    limit: int | None,
    offset: int | None,
    order_by: str | None,
    order: str | None,
    filters: dict[str, str] | None,
) -> ItemQuery:
    settings = get_settings()
    resolved_limit = settings.list_default_limit if limit is None else limit
    resolved_limit = max(1, min(int(resolved_limit), settings.list_max_limit))
    resolved_offset = max(0, int(offset or 0))

    violations: list[dict[str, str]] = []
    resolved_order_by = order_by or "created_at"
    if resolved_order_by not in ORDERABLE_COLUMNS:
        violations.append(
            {
                "field": "_orderBy",
                "code": "enum",
                "message": f"_orderBy must be one of: {', '.join(ORDERABLE_COLUMNS)}",
            }
        )
    resolved_order = (order or "desc").lower()
    if resolved_order not in ORDER_DIRECTIONS:
        violations.append(
            {"field": "_order", "code": "enum", "message": "_order must be one of: asc, desc"}
        )
    for key in filters or {}:
        if not SAFE_FILTER_KEY.match(key):
            violations.append(
                {"field": key, "code": "filter_key", "message": f'Unsupported filter key "{key}"'}
            )
    if violations:
        raise ValidationError("Invalid list options", violations=violations)

    return ItemQuery(
        limit=resolved_limit,
        offset=resolved_offset,
        order_by=resolved_order_by,
        descending=resolved_order == "desc",
        filters={key: str(value) for key, value in (filters or {}).items()},
    )


async def _check_relations(
    session: AsyncSession,
    *,
    tenant_id: str,
    schema: list[FieldDef],
    data: dict[str, Any],
) -> None:
    # Existence check only; referents deleted later leave dangling values behind.
    violations: list[dict[str, str]] = []
    for field in schema:
        if field.relation is None:
            continue
        value = data.get(field.name)
        if value is None or value == "":
            continue
        target = await collections.get_or_create(
            session, tenant_id=tenant_id, name=field.relation.collection
        )
        exists = await bounded(
            items_repo.referent_exists(
                session,
                tenant_id=tenant_id,
                collection_id=target.id,
                field_name=field.relation.field,
                value=value,
            ),
            operation="relation_check",
        )
        if not exists:
            violations.append(
                {
                    "field": field.name,
                    "code": "relation",
                    "message": f"Referenced item not found: {field.relation.collection}/{value}",
                }
            )
    _raise_on_violations(violations)


async def list_items(
    session: AsyncSession,
    *,
    tenant_id: str,
    collection_name: str,
    caller: Caller,
    limit: int | None = None,
    offset: int | None = None,
    order_by: str | None = None,
    order: str | None = None,
    filters: dict[str, str] | None = None,
) -> dict[str, Any]:
    query = _resolve_list_options(
        limit=limit, offset=offset, order_by=order_by, order=order, filters=filters
    )
    collection = await collections.get_or_create(session, tenant_id=tenant_id, name=collection_name)
    decision = evaluate(
        parse_settings(collection.settings_json),
        action=Action.READ,
        role=caller.role,
        identity_id=caller.identity_id,
    )
    scope = ItemScope(
        tenant_id=tenant_id,
        collection_id=collection.id,
        restrict_to_owner=decision.restrict_to_owner,
        owner_id=decision.owner_id,
    )
    rows, total = await bounded(items_repo.list_items(session, scope, query), operation="item_list")
    return {
        "items": [to_dict(row) for row in rows],
        "total": total,
        "limit": query.limit,
        "offset": query.offset,
        "hasMore": query.offset + query.limit < total,
    }


async def get_item(
    session: AsyncSession,
    *,
    tenant_id: str,
    collection_name: str,
    item_id: str,
    caller: Caller,
) -> dict[str, Any]:
    collection = await collections.get_or_create(session, tenant_id=tenant_id, name=collection_name)
    decision = evaluate(
        parse_settings(collection.settings_json),
        action=Action.READ,
        role=caller.role,
        identity_id=caller.identity_id,
    )
    scope = ItemScope(
        tenant_id=tenant_id,
        collection_id=collection.id,
        restrict_to_owner=decision.restrict_to_owner,
        owner_id=decision.owner_id,
    )
    item = await bounded(items_repo.get_item(session, scope, item_id), operation="item_get")
    if item is None:
        raise NotFoundError("Item not found")
    return to_dict(item)


async def create_item(
    session: AsyncSession,
    *,
    tenant_id: str,
    collection_name: str,
    data: Any,
    caller: Caller,
    sort_order: int | None = None,
) -> dict[str, Any]:
    """Validate and insert one item; any violation leaves storage untouched."""
    payload = _require_object(data)
    collection = await collections.get_or_create(session, tenant_id=tenant_id, name=collection_name)
    evaluate(
        parse_settings(collection.settings_json),
        action=Action.CREATE,
        role=caller.role,
        identity_id=caller.identity_id,
    )
    schema = parse_schema(collection.schema_json)
    _raise_on_violations(validate(payload, schema))
    await _check_relations(session, tenant_id=tenant_id, schema=schema, data=payload)

    item = await items_repo.insert_item(
        session,
        tenant_id=tenant_id,
        collection_id=collection.id,
        owner_id=caller.identity_id,
        data=dict(payload),
        sort_order=sort_order,
    )
    await bounded(session.commit(), operation="item_create")
    logger.info(
        "item_created tenant_id=%s collection=%s item_id=%s", tenant_id, collection_name, item.id
    )
    return to_dict(item)


async def update_item(
    session: AsyncSession,
    *,
    tenant_id: str,
    collection_name: str,
    item_id: str,
    data: Any,
    caller: Caller,
) -> dict[str, Any]:
    """Shallow-merge ``data`` over the stored payload and validate the merged result."""
    patch = _require_object(data)
    collection = await collections.get_or_create(session, tenant_id=tenant_id, name=collection_name)
    decision = evaluate(
        parse_settings(collection.settings_json),
        action=Action.UPDATE,
        role=caller.role,
        identity_id=caller.identity_id,
    )
    scope = ItemScope(
        tenant_id=tenant_id,
        collection_id=collection.id,
        restrict_to_owner=decision.restrict_to_owner,
        owner_id=decision.owner_id,
    )
    item = await bounded(items_repo.get_item(session, scope, item_id), operation="item_get")
    if item is None:
        raise NotFoundError("Item not found")

    merged = {**(item.data or {}), **patch}
    schema = parse_schema(collection.schema_json)
    _raise_on_violations(validate(merged, schema))
    # Only relation values supplied in this patch are re-checked.
    await _check_relations(session, tenant_id=tenant_id, schema=schema, data=patch)

    # Reassign so the JSON column is flagged dirty.
    item.data = merged
    item.updated_at = datetime.now(timezone.utc)
    await bounded(session.commit(), operation="item_update")
    return to_dict(item)


async def delete_item(
    session: AsyncSession,
    *,
    tenant_id: str,
    collection_name: str,
    item_id: str,
    caller: Caller,
    bypass_ownership: bool = False,
) -> None:
    collection = await collections.get_or_create(session, tenant_id=tenant_id, name=collection_name)
    if bypass_ownership:
        scope = ItemScope(tenant_id=tenant_id, collection_id=collection.id)
    else:
        decision = evaluate(
            parse_settings(collection.settings_json),
            action=Action.DELETE,
            role=caller.role,
            identity_id=caller.identity_id,
        )
        scope = ItemScope(
            tenant_id=tenant_id,
            collection_id=collection.id,
            restrict_to_owner=decision.restrict_to_owner,
            owner_id=decision.owner_id,
        )
    deleted = await bounded(items_repo.delete_item(session, scope, item_id), operation="item_delete")
    if not deleted:
        await session.rollback()
        raise NotFoundError("Item not found")
    await bounded(session.commit(), operation="item_delete_commit")
    logger.info(
        "item_deleted tenant_id=%s collection=%s item_id=%s", tenant_id, collection_name, item_id
    )


async def count_items(session: AsyncSession, *, tenant_id: str, collection_name: str) -> int:
    # Tenant-wide aggregate; ownership settings do not narrow counts.
    collection = await collections.get_or_create(session, tenant_id=tenant_id, name=collection_name)
    return await bounded(
        items_repo.count_items(session, tenant_id=tenant_id, collection_id=collection.id),
        operation="item_count",
    )


def _require_ids(ids: list[str]) -> list[str]:
    cleaned = [str(item_id) for item_id in ids if item_id]
    if not cleaned:
        raise ValidationError(
            "ids must be a non-empty list",
            violations=[{"field": "ids", "code": "required", "message": "ids must be a non-empty list"}],
        )
    return cleaned


async def bulk_delete(
    session: AsyncSession, *, tenant_id: str, collection_name: str, ids: list[str]
) -> int:
    # Role checks happen in the request layer; this is the set-based primitive.
    resolved_ids = _require_ids(ids)
    collection = await collections.get_or_create(session, tenant_id=tenant_id, name=collection_name)
    affected = await bounded(
        items_repo.bulk_delete(
            session, tenant_id=tenant_id, collection_id=collection.id, ids=resolved_ids
        ),
        operation="item_bulk_delete",
    )
    await bounded(session.commit(), operation="item_bulk_delete_commit")
    logger.info(
        "items_bulk_deleted tenant_id=%s collection=%s requested=%s affected=%s",
        tenant_id,
        collection_name,
        len(resolved_ids),
        affected,
    )
    return affected


async def bulk_archive(
    session: AsyncSession, *, tenant_id: str, collection_name: str, ids: list[str]
) -> int:
    resolved_ids = _require_ids(ids)
    collection = await collections.get_or_create(session, tenant_id=tenant_id, name=collection_name)
    affected = await bounded(
        items_repo.bulk_archive(
            session, tenant_id=tenant_id, collection_id=collection.id, ids=resolved_ids
        ),
        operation="item_bulk_archive",
    )
    await bounded(session.commit(), operation="item_bulk_archive_commit")
    logger.info(
        "items_bulk_archived tenant_id=%s collection=%s requested=%s affected=%s",
        tenant_id,
        collection_name,
        len(resolved_ids),
        affected,
    )
    return affected


async def get_stats(session: AsyncSession, *, tenant_id: str) -> dict[str, dict[str, Any]]:
    rows = await bounded(
        collections_repo.collection_stats(session, tenant_id), operation="collection_stats"
    )
    return {name: {"count": count, "lastUpdated": iso_utc(last)} for name, count, last in rows}


async def admin_list_collections(session: AsyncSession, *, tenant_id: str) -> list[dict[str, Any]]:
    # Name order with the live item count folded into each collection.
    rows = await collections.list_collections(session, tenant_id=tenant_id)
    stats = await get_stats(session, tenant_id=tenant_id)
    listed = [
        {**collections.to_dict(row), "itemCount": stats.get(row.name, {}).get("count", 0)}
        for row in rows
    ]
    return sorted(listed, key=lambda entry: entry["name"])


async def admin_list_items(
    session: AsyncSession,
    *,
    tenant_id: str,
    collection_name: str,
    limit: int | None = None,
    offset: int | None = None,
) -> dict[str, Any]:
    """Page through a collection's live items, newest first, ignoring ownership.

    Unlike the data routes this never provisions the collection; an unknown name is a 404.
    """
    collections.require_valid_name(collection_name)
    collection = await collections.find(session, tenant_id=tenant_id, name=collection_name)
    if collection is None:
        raise NotFoundError("Collection not found")
    settings = get_settings()
    resolved_limit = settings.admin_list_default_limit if limit is None else limit
    resolved_limit = max(1, min(int(resolved_limit), settings.admin_list_max_limit))
    resolved_offset = max(0, int(offset or 0))
    scope = ItemScope(tenant_id=tenant_id, collection_id=collection.id)
    query = ItemQuery(limit=resolved_limit, offset=resolved_offset)
    rows, total = await bounded(items_repo.list_items(session, scope, query), operation="item_list")
    return {
        "items": [to_dict(row) for row in rows],
        "total": total,
        "limit": resolved_limit,
        "offset": resolved_offset,
        "hasMore": resolved_offset + resolved_limit < total,
    }
