from __future__ import annotations

import csv
import io
import json
from typing import Any, Literal

from sqlalchemy.ext.asyncio import AsyncSession

from appforge.domain.models import iso_utc
from appforge.persistence.db import bounded
from appforge.persistence.repos import collections as collections_repo
from appforge.persistence.repos import end_users as end_users_repo
from appforge.persistence.repos import items as items_repo
from appforge.services import collections


ExportFormat = Literal["json", "csv"]
CSV_HEADER = ("collection", "field", "value", "created_at")


async def collect_tenant_data(session: AsyncSession, *, tenant_id: str) -> dict[str, Any]:
    # Snapshot of every collection (schema plus live items) and the tenant's users.
    exported: dict[str, Any] = {"app_id": tenant_id, "collections": {}, "users": []}
    for collection in await bounded(
        collections_repo.list_for_tenant(session, tenant_id), operation="export_collections"
    ):
        rows = await bounded(
            items_repo.list_live_items(session, tenant_id=tenant_id, collection_id=collection.id),
            operation="export_items",
        )
        exported["collections"][collection.name] = {
            "schema": collections.to_dict(collection)["schema"],
            "items": [
                {"id": row.id, "data": row.data or {}, "created_at": iso_utc(row.created_at)}
                for row in rows
            ],
        }
    for user in await bounded(end_users_repo.list_all(session, tenant_id), operation="export_users"):
        exported["users"].append(
            {
                "email": user.email,
                "display_name": user.display_name,
                "role": user.role,
                "created_at": iso_utc(user.created_at),
            }
        )
    return exported


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render_csv(exported: dict[str, Any]) -> str:
    """Flatten items to ``collection,field,value,created_at`` rows with RFC 4180 quoting."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\r\n")
    writer.writerow(CSV_HEADER)
    for name, payload in exported["collections"].items():
        for item in payload["items"]:
            for field, value in item["data"].items():
                writer.writerow((name, field, _cell(value), item["created_at"] or ""))
    return buffer.getvalue()


async def export_tenant(
    session: AsyncSession, *, tenant_id: str, export_format: ExportFormat = "json"
) -> tuple[str, str]:
    # Returns (body, media type).
    exported = await collect_tenant_data(session, tenant_id=tenant_id)
    if export_format == "csv":
        return render_csv(exported), "text/csv"
    return json.dumps(exported, indent=2, default=str), "application/json"
