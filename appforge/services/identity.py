from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from appforge.core.config import get_settings
from appforge.core.errors import (
    AuthInvalidError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from appforge.domain.models import EndUser, iso_utc
from appforge.persistence.db import bounded
from appforge.persistence.repos import end_users as end_users_repo
from appforge.persistence.repos import tenants as tenants_repo
from appforge.services.audit import record_event
from appforge.services.auth.passwords import hash_password, verify_password
from appforge.services.auth.roles import SELF_ASSIGNABLE_ROLES, Role, normalize_role
from appforge.services.auth.tokens import generate_reset_token, hash_reset_token, issue_token


logger = logging.getLogger(__name__)

PLAN_USER_LIMITS: dict[str, int] = {
    "free": 100,
    "maker": 1_000,
    "pro": 10_000,
    "agency": 100_000,
}


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _as_aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def to_public_dict(user: EndUser) -> dict[str, Any]:
    # Never expose password or reset-token material.
    return {
        "id": user.id,
        "email": user.email,
        "display_name": user.display_name,
        "avatar_url": user.avatar_url,
        "role": user.role,
        "profile_data": user.profile_data or {},
        "banned": user.banned_at is not None,
        "banned_at": iso_utc(user.banned_at),
        "last_login_at": iso_utc(user.last_login_at),
        "created_at": iso_utc(user.created_at),
        "updated_at": iso_utc(user.updated_at),
    }


def _require_password(password: str, *, field: str = "password") -> None:
    min_length = get_settings().password_min_length
    if len(password or "") < min_length:
        raise ValidationError(
            "Password too short",
            violations=[
                {
                    "field": field,
                    "code": "min_length",
                    "message": f"Password must be at least {min_length} characters",
                }
            ],
        )


def _session_payload(user: EndUser, tenant_id: str) -> dict[str, Any]:
    token = issue_token(identity_id=user.id, tenant_id=tenant_id, role=user.role)
    return {"user": to_public_dict(user), "token": token}


async def signup(
    session: AsyncSession,
    *,
    tenant_id: str,
    email: str,
    password: str,
    display_name: str | None = None,
    role: Role | str | None = None,
) -> dict[str, Any]:
    """Create an identity and return it with a fresh session token.

    The first identity in a tenant becomes admin regardless of the requested role.
    """
    normalized_email = normalize_email(email)
    _require_password(password)
    try:
        requested_role = normalize_role(role or Role.USER)
    except ValueError as exc:
        raise ValidationError(
            "Unsupported role",
            violations=[{"field": "role", "code": "enum", "message": "Role must be user or editor"}],
        ) from exc
    if requested_role not in SELF_ASSIGNABLE_ROLES:
        raise ValidationError(
            "Unsupported role",
            violations=[{"field": "role", "code": "enum", "message": "Role must be user or editor"}],
        )

    tenant = await bounded(tenants_repo.get_tenant(session, tenant_id), operation="tenant_get")
    if tenant is None:
        raise NotFoundError("App not found")
    existing = await bounded(
        end_users_repo.get_by_email(session, tenant_id, normalized_email), operation="user_get"
    )
    if existing is not None:
        raise ConflictError("An account with this email already exists")
    limit = PLAN_USER_LIMITS.get(tenant.plan, PLAN_USER_LIMITS["free"])
    if tenant.end_user_count >= limit:
        raise ForbiddenError(
            "This app has reached its user limit",
            details={"reason": "user_limit_reached", "plan": tenant.plan, "limit": limit},
        )

    # Concurrent first signups can both observe zero and both become admin.
    existing_count = await bounded(
        end_users_repo.count_for_tenant(session, tenant_id), operation="user_count"
    )
    resolved_role = Role.ADMIN if existing_count == 0 else requested_role
    user = await end_users_repo.create_end_user(
        session,
        tenant_id=tenant_id,
        email=normalized_email,
        password_hash=hash_password(password),
        display_name=(display_name or "").strip() or normalized_email.split("@")[0],
        role=resolved_role.value,
    )
    try:
        await bounded(tenants_repo.increment_end_user_count(session, tenant_id), operation="tenant_count")
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("An account with this email already exists") from exc

    logger.info(
        "end_user_signed_up tenant_id=%s user_id=%s role=%s", tenant_id, user.id, user.role
    )
    return _session_payload(user, tenant_id)


async def signin(
    session: AsyncSession,
    *,
    tenant_id: str,
    email: str,
    password: str,
) -> dict[str, Any]:
    user = await bounded(
        end_users_repo.get_by_email(session, tenant_id, normalize_email(email)),
        operation="user_get",
    )
    # Same message for unknown email and wrong password to avoid account enumeration.
    if user is None or not verify_password(password, user.password_hash):
        raise AuthInvalidError("Invalid email or password")
    if user.banned_at is not None:
        raise ForbiddenError("This account has been suspended")

    user.last_login_at = datetime.now(timezone.utc)
    await bounded(session.commit(), operation="user_signin")
    return _session_payload(user, tenant_id)


async def _require_user(session: AsyncSession, tenant_id: str, user_id: str) -> EndUser:
    user = await bounded(end_users_repo.get_by_id(session, tenant_id, user_id), operation="user_get")
    if user is None:
        raise NotFoundError("User not found")
    return user


async def get_user(session: AsyncSession, *, tenant_id: str, user_id: str) -> dict[str, Any]:
    return to_public_dict(await _require_user(session, tenant_id, user_id))


async def update_profile(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    display_name: str | None = None,
    avatar_url: str | None = None,
    profile_data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    if display_name is None and avatar_url is None and profile_data is None:
        raise ValidationError(
            "No profile fields supplied",
            violations=[
                {
                    "field": "body",
                    "code": "required",
                    "message": "Provide display_name, avatar_url or profile_data",
                }
            ],
        )
    user = await _require_user(session, tenant_id, user_id)
    if display_name is not None:
        user.display_name = display_name
    if avatar_url is not None:
        user.avatar_url = avatar_url
    if profile_data is not None:
        user.profile_data = dict(profile_data)
    await bounded(session.commit(), operation="user_profile_update")
    return to_public_dict(user)


async def request_password_reset(
    session: AsyncSession, *, tenant_id: str, email: str
) -> str | None:
    """Issue a reset token when the e-mail exists.

    Returns the plaintext token for delivery, or None. Callers must respond identically
    in both cases.
    """
    user = await bounded(
        end_users_repo.get_by_email(session, tenant_id, normalize_email(email)),
        operation="user_get",
    )
    if user is None:
        logger.info("password_reset_unknown_email tenant_id=%s", tenant_id)
        return None

    raw_token = generate_reset_token()
    # Overwriting the digest invalidates any earlier outstanding token.
    user.reset_token_hash = hash_reset_token(raw_token)
    user.reset_token_expires_at = datetime.now(timezone.utc) + timedelta(
        minutes=get_settings().reset_token_ttl_minutes
    )
    await bounded(session.commit(), operation="user_reset_request")
    logger.info("password_reset_requested tenant_id=%s user_id=%s", tenant_id, user.id)
    return raw_token


async def reset_password(
    session: AsyncSession, *, tenant_id: str, token: str, new_password: str
) -> None:
    _require_password(new_password, field="new_password")
    invalid = ValidationError(
        "Invalid or expired reset token",
        violations=[{"field": "token", "code": "invalid", "message": "Invalid or expired reset token"}],
    )
    if not token:
        raise invalid
    user = await bounded(
        end_users_repo.get_by_reset_hash(session, tenant_id, hash_reset_token(token)),
        operation="user_get",
    )
    if user is None or user.reset_token_expires_at is None:
        raise invalid
    if _as_aware(user.reset_token_expires_at) < datetime.now(timezone.utc):
        raise invalid

    user.password_hash = hash_password(new_password)
    user.reset_token_hash = None
    user.reset_token_expires_at = None
    await bounded(session.commit(), operation="user_reset_password")
    logger.info("password_reset_completed tenant_id=%s user_id=%s", tenant_id, user.id)


async def list_users(
    session: AsyncSession,
    *,
    tenant_id: str,
    limit: int = 50,
    offset: int = 0,
    search: str | None = None,
    role: str | None = None,
) -> dict[str, Any]:
    max_limit = get_settings().admin_list_max_limit
    resolved_limit = max(1, min(int(limit), max_limit))
    resolved_offset = max(0, int(offset))
    resolved_role = None
    if role:
        try:
            resolved_role = normalize_role(role).value
        except ValueError as exc:
            raise ValidationError(
                "Unsupported role",
                violations=[{"field": "role", "code": "enum", "message": f"Unsupported role: {role}"}],
            ) from exc
    users, total = await bounded(
        end_users_repo.list_end_users(
            session,
            tenant_id=tenant_id,
            search=(search or "").strip() or None,
            role=resolved_role,
            offset=resolved_offset,
            limit=resolved_limit,
        ),
        operation="user_list",
    )
    return {
        "users": [to_public_dict(user) for user in users],
        "total": total,
        "limit": resolved_limit,
        "offset": resolved_offset,
        "hasMore": resolved_offset + resolved_limit < total,
    }


async def update_user_role(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    role: Role | str,
    actor_id: str | None,
    request: Request | None = None,
) -> dict[str, Any]:
    try:
        new_role = normalize_role(role)
    except ValueError as exc:
        raise ValidationError(
            "Unsupported role",
            violations=[{"field": "role", "code": "enum", "message": f"Unsupported role: {role}"}],
        ) from exc
    user = await _require_user(session, tenant_id, user_id)
    previous_role = user.role
    user.role = new_role.value
    await bounded(session.commit(), operation="user_role_update")
    await record_event(
        tenant_id=tenant_id,
        actor_id=actor_id,
        action="user.role_changed",
        resource_type="end_user",
        resource_id=user_id,
        details={"from": previous_role, "to": new_role.value},
        request=request,
    )
    return to_public_dict(user)


async def ban_user(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    actor_id: str | None,
    request: Request | None = None,
) -> dict[str, Any]:
    user = await _require_user(session, tenant_id, user_id)
    if user.banned_at is None:
        user.banned_at = datetime.now(timezone.utc)
        await bounded(session.commit(), operation="user_ban")
    await record_event(
        tenant_id=tenant_id,
        actor_id=actor_id,
        action="user.banned",
        resource_type="end_user",
        resource_id=user_id,
        request=request,
    )
    return to_public_dict(user)


async def unban_user(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    actor_id: str | None,
    request: Request | None = None,
) -> dict[str, Any]:
    user = await _require_user(session, tenant_id, user_id)
    if user.banned_at is not None:
        user.banned_at = None
        await bounded(session.commit(), operation="user_unban")
    await record_event(
        tenant_id=tenant_id,
        actor_id=actor_id,
        action="user.unbanned",
        resource_type="end_user",
        resource_id=user_id,
        request=request,
    )
    return to_public_dict(user)
