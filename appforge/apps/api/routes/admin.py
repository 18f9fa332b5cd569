from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from appforge.apps.api.deps import get_db, get_tenant_id, require_role
from appforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from appforge.apps.api.rate_limit import PRESET_DATA_READ, PRESET_DATA_WRITE, rate_limited
from appforge.apps.api.response import success_response
from appforge.core.config import get_settings
from appforge.persistence.db import bounded
from appforge.persistence.repos import audit as audit_repo
from appforge.persistence.repos import end_users as end_users_repo
from appforge.services import audit, export, identity, items
from appforge.services.access_policy import Caller
from appforge.services.auth.roles import Role


router = APIRouter(prefix="/admin", tags=["admin"], responses=DEFAULT_ERROR_RESPONSES)

_read_limit = Depends(rate_limited(PRESET_DATA_READ))
_write_limit = Depends(rate_limited(PRESET_DATA_WRITE))
_require_admin = require_role(Role.ADMIN)

ACTIVE_WINDOW_DAYS = 7
RECENT_AUDIT_ENTRIES = 10


class RoleUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: Literal["guest", "user", "editor", "admin"]


@router.get("/users", dependencies=[_read_limit])
async def list_users(
    request: Request,
    limit: int = Query(default=50, ge=1),
    offset: int = Query(default=0, ge=0),
    search: str | None = Query(default=None, max_length=256),
    role: str | None = Query(default=None),
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(_require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await identity.list_users(
        db, tenant_id=tenant_id, limit=limit, offset=offset, search=search, role=role
    )
    return success_response(request=request, data=result)


@router.get("/users/{user_id}", dependencies=[_read_limit])
async def get_user(
    request: Request,
    user_id: str,
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(_require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await identity.get_user(db, tenant_id=tenant_id, user_id=user_id)
    return success_response(request=request, data=user)


@router.patch("/users/{user_id}/role", dependencies=[_write_limit])
async def update_user_role(
    request: Request,
    user_id: str,
    payload: RoleUpdateRequest,
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(_require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await identity.update_user_role(
        db,
        tenant_id=tenant_id,
        user_id=user_id,
        role=payload.role,
        actor_id=caller.identity_id,
        request=request,
    )
    return success_response(request=request, data=user)


@router.post("/users/{user_id}/ban", dependencies=[_write_limit])
async def ban_user(
    request: Request,
    user_id: str,
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(_require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await identity.ban_user(
        db, tenant_id=tenant_id, user_id=user_id, actor_id=caller.identity_id, request=request
    )
    return success_response(request=request, data=user)


@router.post("/users/{user_id}/unban", dependencies=[_write_limit])
async def unban_user(
    request: Request,
    user_id: str,
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(_require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await identity.unban_user(
        db, tenant_id=tenant_id, user_id=user_id, actor_id=caller.identity_id, request=request
    )
    return success_response(request=request, data=user)


@router.get("/stats", dependencies=[_read_limit])
async def admin_stats(
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(_require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Dashboard summary: user counters, per-collection stats and latest audit entries.
    since = datetime.now(timezone.utc) - timedelta(days=ACTIVE_WINDOW_DAYS)
    users = await bounded(
        end_users_repo.user_stats(db, tenant_id, active_since=since), operation="user_stats"
    )
    collection_stats = await items.get_stats(db, tenant_id=tenant_id)
    events, _total = await bounded(
        audit_repo.list_events(db, tenant_id=tenant_id, limit=RECENT_AUDIT_ENTRIES),
        operation="audit_list",
    )
    return success_response(
        request=request,
        data={
            "users": users,
            "collections": collection_stats,
            "recent_activity": [audit.to_dict(event) for event in events],
        },
    )


@router.get("/audit-log", dependencies=[_read_limit])
async def audit_log(
    request: Request,
    limit: int = Query(default=50, ge=1),
    offset: int = Query(default=0, ge=0),
    action: str | None = Query(default=None, max_length=128),
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(_require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    resolved_limit = min(limit, get_settings().admin_list_max_limit)
    events, total = await bounded(
        audit_repo.list_events(
            db, tenant_id=tenant_id, action=action, offset=offset, limit=resolved_limit
        ),
        operation="audit_list",
    )
    return success_response(
        request=request,
        data={
            "entries": [audit.to_dict(event) for event in events],
            "total": total,
            "limit": resolved_limit,
            "offset": offset,
            "hasMore": offset + resolved_limit < total,
        },
    )


@router.get("/collections", dependencies=[_read_limit])
async def list_collections(
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(_require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    listed = await items.admin_list_collections(db, tenant_id=tenant_id)
    return success_response(request=request, data={"collections": listed})


@router.get("/collections/{collection}/items", dependencies=[_read_limit])
async def list_collection_items(
    request: Request,
    collection: str,
    limit: int | None = Query(default=None, alias="_limit"),
    offset: int | None = Query(default=None, alias="_offset"),
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(_require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    page = await items.admin_list_items(
        db, tenant_id=tenant_id, collection_name=collection, limit=limit, offset=offset
    )
    return success_response(request=request, data=page)


@router.delete("/collections/{collection}/items/{item_id}", dependencies=[_write_limit])
async def admin_delete_item(
    request: Request,
    collection: str,
    item_id: str,
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(_require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Admin moderation bypasses ownership filters and is always audited.
    await items.delete_item(
        db,
        tenant_id=tenant_id,
        collection_name=collection,
        item_id=item_id,
        caller=caller,
        bypass_ownership=True,
    )
    await audit.record_event(
        tenant_id=tenant_id,
        actor_id=caller.identity_id,
        action="item.admin_deleted",
        resource_type="collection_item",
        resource_id=item_id,
        details={"collection": collection},
        request=request,
    )
    return success_response(request=request, data={"deleted": True, "id": item_id})


@router.get("/export", dependencies=[_read_limit])
async def export_data(
    format: Literal["json", "csv"] = Query(default="json"),
    tenant_id: str = Depends(get_tenant_id),
    caller: Caller = Depends(_require_admin),
    db: AsyncSession = Depends(get_db),
) -> Response:
    # Raw download rather than the JSON envelope.
    body, media_type = await export.export_tenant(db, tenant_id=tenant_id, export_format=format)
    filename = f"{tenant_id}-export.{format}"
    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
