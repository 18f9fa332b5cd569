from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from appforge.apps.api.deps import get_caller, get_db, get_tenant_id, require_caller, require_role
from appforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from appforge.apps.api.rate_limit import PRESET_DATA_READ, PRESET_DATA_WRITE, rate_limited
from appforge.apps.api.response import SuccessEnvelope, success_response
from appforge.domain.schema import CollectionSpec
from appforge.services import collections, items
from appforge.services.access_policy import Caller
from appforge.services.auth.roles import Role


router = APIRouter(prefix="/data", tags=["data"], responses=DEFAULT_ERROR_RESPONSES)

_read_limit = Depends(rate_limited(PRESET_DATA_READ))
_write_limit = Depends(rate_limited(PRESET_DATA_WRITE))

# Query parameters with a leading underscore are list options, never filters.
_RESERVED_QUERY_PARAMS = {"_limit", "_offset", "_orderBy", "_order"}


class ItemResponse(BaseModel):
    id: str
    data: dict[str, Any]
    owner_id: str | None = None
    sort_order: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


class ItemListResponse(BaseModel):
    items: list[ItemResponse]
    total: int
    limit: int
    offset: int
    hasMore: bool


class CollectionResponse(BaseModel):
    id: str
    name: str
    description: str | None = None
    schema_: list[dict[str, Any]] = Field(default_factory=list, alias="schema")
    settings: dict[str, Any] = Field(default_factory=dict)
    created_at: str | None = None
    updated_at: str | None = None

    model_config = ConfigDict(populate_by_name=True)


class ItemCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    data: dict[str, Any] = Field(min_length=1)
    sort_order: int | None = None


class ItemUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    data: dict[str, Any] = Field(min_length=1)


class BulkIdsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ids: list[str] = Field(min_length=1, max_length=1000)


def _filters_from_query(request: Request) -> dict[str, str]:
    return {
        key: value
        for key, value in request.query_params.items()
        if key not in _RESERVED_QUERY_PARAMS
    }


@router.get(
    "/_collections",
    dependencies=[_read_limit],
    response_model=SuccessEnvelope[list[CollectionResponse]],
    response_model_by_alias=True,
)
async def list_collections(
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(require_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await collections.list_collections(db, tenant_id=tenant_id)
    return success_response(request=request, data=[collections.to_dict(row) for row in rows])


@router.put(
    "/_collections/{name}",
    dependencies=[_write_limit],
    response_model=SuccessEnvelope[CollectionResponse],
    response_model_by_alias=True,
)
async def put_collection(
    request: Request,
    name: str,
    payload: CollectionSpec,
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(require_role(Role.ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    collection = await collections.update_schema(db, tenant_id=tenant_id, name=name, spec=payload)
    return success_response(request=request, data=collections.to_dict(collection))


@router.get("/_stats", dependencies=[_read_limit])
async def stats(
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(require_role(Role.ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    data = await items.get_stats(db, tenant_id=tenant_id)
    return success_response(request=request, data=data)


@router.get(
    "/{collection}",
    dependencies=[_read_limit],
    response_model=SuccessEnvelope[ItemListResponse],
)
async def list_items(
    request: Request,
    collection: str,
    limit: int | None = Query(default=None, alias="_limit"),
    offset: int | None = Query(default=None, alias="_offset"),
    order_by: str | None = Query(default=None, alias="_orderBy"),
    order: str | None = Query(default=None, alias="_order"),
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Every non-reserved query parameter is an equality filter on item data.
    result = await items.list_items(
        db,
        tenant_id=tenant_id,
        collection_name=collection,
        caller=caller,
        limit=limit,
        offset=offset,
        order_by=order_by,
        order=order,
        filters=_filters_from_query(request),
    )
    return success_response(request=request, data=result)


@router.post(
    "/{collection}",
    status_code=201,
    dependencies=[_write_limit],
    response_model=SuccessEnvelope[ItemResponse],
)
async def create_item(
    request: Request,
    collection: str,
    payload: ItemCreateRequest,
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    item = await items.create_item(
        db,
        tenant_id=tenant_id,
        collection_name=collection,
        data=payload.data,
        caller=caller,
        sort_order=payload.sort_order,
    )
    return success_response(request=request, data=item)


@router.get("/{collection}/count", dependencies=[_read_limit])
async def count_items(
    request: Request,
    collection: str,
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    count = await items.count_items(db, tenant_id=tenant_id, collection_name=collection)
    return success_response(request=request, data={"count": count})


@router.post("/{collection}/_bulk-delete", dependencies=[_write_limit])
async def bulk_delete(
    request: Request,
    collection: str,
    payload: BulkIdsRequest,
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(require_role(Role.ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    deleted = await items.bulk_delete(
        db, tenant_id=tenant_id, collection_name=collection, ids=payload.ids
    )
    return success_response(request=request, data={"deleted": deleted})


@router.post("/{collection}/_bulk-archive", dependencies=[_write_limit])
async def bulk_archive(
    request: Request,
    collection: str,
    payload: BulkIdsRequest,
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(require_role(Role.ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    archived = await items.bulk_archive(
        db, tenant_id=tenant_id, collection_name=collection, ids=payload.ids
    )
    return success_response(request=request, data={"archived": archived})


@router.get(
    "/{collection}/{item_id}",
    dependencies=[_read_limit],
    response_model=SuccessEnvelope[ItemResponse],
)
async def get_item(
    request: Request,
    collection: str,
    item_id: str,
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    item = await items.get_item(
        db, tenant_id=tenant_id, collection_name=collection, item_id=item_id, caller=caller
    )
    return success_response(request=request, data=item)


@router.patch(
    "/{collection}/{item_id}",
    dependencies=[_write_limit],
    response_model=SuccessEnvelope[ItemResponse],
)
async def update_item(
    request: Request,
    collection: str,
    item_id: str,
    payload: ItemUpdateRequest,
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    item = await items.update_item(
        db,
        tenant_id=tenant_id,
        collection_name=collection,
        item_id=item_id,
        data=payload.data,
        caller=caller,
    )
    return success_response(request=request, data=item)


@router.delete("/{collection}/{item_id}", dependencies=[_write_limit])
async def delete_item(
    request: Request,
    collection: str,
    item_id: str,
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await items.delete_item(
        db, tenant_id=tenant_id, collection_name=collection, item_id=item_id, caller=caller
    )
    return success_response(request=request, data={"deleted": True, "id": item_id})
