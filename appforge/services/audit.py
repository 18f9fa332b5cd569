from __future__ import annotations

import logging
from typing import Any

from starlette.requests import Request

from appforge.core.errors import InternalError
from appforge.domain.models import AuditEvent, iso_utc
from appforge.persistence.db import SessionLocal, bounded
from appforge.persistence.repos import audit as audit_repo


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["authorization", "token", "secret", "password", "hash"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_details(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_details(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_details(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"request_id": None, "ip_address": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    return {"request_id": request_id, "ip_address": ip_address}


async def record_event(
    *,
    tenant_id: str,
    actor_id: str | None,
    action: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    details: dict[str, Any] | None = None,
    request: Request | None = None,
) -> None:
    """Append one audit entry in its own session.

    Failures and stalls are logged and swallowed so the primary operation never fails
    or hangs on audit. Closing the session rolls back anything left uncommitted.
    """
    context = get_request_context(request)
    async with SessionLocal() as audit_session:

        async def _write() -> None:
            await audit_repo.insert_event(
                audit_session,
                tenant_id=tenant_id,
                actor_id=actor_id,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                request_id=context["request_id"],
                ip_address=context["ip_address"],
                details_json=sanitize_details(details or {}),
            )
            await audit_session.commit()

        try:
            await bounded(_write(), operation="audit_write")
        except InternalError as exc:
            logger.warning(
                "audit_event_write_failed action=%s tenant_id=%s request_id=%s",
                action,
                tenant_id,
                context["request_id"],
                exc_info=exc,
            )


def to_dict(event: AuditEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "actor_id": event.actor_id,
        "action": event.action,
        "resource_type": event.resource_type,
        "resource_id": event.resource_id,
        "request_id": event.request_id,
        "details": event.details_json or {},
        "created_at": iso_utc(event.created_at),
    }
