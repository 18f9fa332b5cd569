from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from appforge.core.errors import InternalError, ValidationError
from appforge.domain.models import Collection, iso_utc
from appforge.domain.schema import (
    COLLECTION_NAME_MAX_LENGTH,
    CollectionSpec,
    dump_schema,
    dump_settings,
    is_valid_collection_name,
    parse_schema,
    parse_settings,
)
from appforge.persistence.db import bounded
from appforge.persistence.repos import collections as collections_repo


logger = logging.getLogger(__name__)

AUTO_CREATED_DESCRIPTION = "Auto-created collection: {name}"


def require_valid_name(name: str, *, field: str = "collection") -> str:
    # Collection names double as storage-facing identifiers; reject anything else early.
    if not is_valid_collection_name(name):
        raise ValidationError(
            "Invalid collection name",
            violations=[
                {
                    "field": field,
                    "code": "pattern",
                    "message": (
                        "Collection names use lowercase letters, digits and underscores, "
                        f"must not start with a digit and are at most {COLLECTION_NAME_MAX_LENGTH} characters"
                    ),
                }
            ],
        )
    return name


async def find(session: AsyncSession, *, tenant_id: str, name: str) -> Collection | None:
    return await bounded(
        collections_repo.get_by_name(session, tenant_id, name), operation="collection_get"
    )


async def get_or_create(session: AsyncSession, *, tenant_id: str, name: str) -> Collection:
    """Resolve a collection by name, provisioning an empty one on first use.

    Concurrent first writers race on the ``(tenant_id, name)`` unique constraint; the
    insert is a no-op for every loser, so exactly one row ever exists.
    """
    require_valid_name(name)
    existing = await find(session, tenant_id=tenant_id, name=name)
    if existing is not None:
        return existing

    created = await bounded(
        collections_repo.insert_if_absent(
            session,
            collection_id=uuid4().hex,
            tenant_id=tenant_id,
            name=name,
            description=AUTO_CREATED_DESCRIPTION.format(name=name),
        ),
        operation="collection_insert",
    )
    await bounded(session.commit(), operation="collection_commit")
    if created:
        logger.info("collection_auto_created tenant_id=%s name=%s", tenant_id, name)

    collection = await find(session, tenant_id=tenant_id, name=name)
    if collection is None:
        raise InternalError("Collection could not be provisioned", details={"collection": name})
    return collection


async def update_schema(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str,
    spec: CollectionSpec,
) -> Collection:
    # Replace the schema wholesale; stored items are revalidated only on their next write.
    for field in spec.schema_fields:
        if field.relation is not None:
            require_valid_name(field.relation.collection, field=f"{field.name}.relation.collection")
    collection = await get_or_create(session, tenant_id=tenant_id, name=name)
    collection.schema_json = dump_schema(spec.schema_fields)
    if spec.settings is not None:
        collection.settings_json = dump_settings(spec.settings)
    if spec.description is not None:
        collection.description = spec.description
    collection.updated_at = datetime.now(timezone.utc)
    await bounded(session.commit(), operation="collection_update")
    logger.info(
        "collection_schema_updated tenant_id=%s name=%s fields=%s",
        tenant_id,
        name,
        len(spec.schema_fields),
    )
    return collection


async def list_collections(session: AsyncSession, *, tenant_id: str) -> list[Collection]:
    return await bounded(
        collections_repo.list_for_tenant(session, tenant_id), operation="collection_list"
    )


def to_dict(collection: Collection) -> dict[str, Any]:
    return {
        "id": collection.id,
        "name": collection.name,
        "description": collection.description,
        "schema": dump_schema(parse_schema(collection.schema_json)),
        "settings": dump_settings(parse_settings(collection.settings_json)),
        "created_at": iso_utc(collection.created_at),
        "updated_at": iso_utc(collection.updated_at),
    }
