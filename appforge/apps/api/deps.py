from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from appforge.core.errors import (
    AuthInvalidError,
    AuthRequiredError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from appforge.persistence.db import bounded, get_session
from appforge.persistence.repos import tenants as tenants_repo
from appforge.services.access_policy import GUEST, Caller
from appforge.services.auth.roles import Role, normalize_role, role_allows
from appforge.services.auth.tokens import parse_token


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


async def get_tenant_id(
    x_app_id: str | None = Header(default=None, alias="X-App-Id", max_length=128),
    db: AsyncSession = Depends(get_db),
) -> str:
    # Every data and auth call is scoped by the app identifier header.
    tenant_id = (x_app_id or "").strip()
    if not tenant_id:
        raise ValidationError(
            "X-App-Id header is required",
            violations=[{"field": "X-App-Id", "code": "required", "message": "X-App-Id header is required"}],
        )
    tenant = await bounded(tenants_repo.get_tenant(db, tenant_id), operation="tenant_get")
    if tenant is None:
        raise NotFoundError("App not found")
    return tenant_id


def _parse_bearer_token(header_value: str | None) -> str | None:
    # Enforce Bearer token format; an absent header means guest.
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthInvalidError("Malformed Authorization header")
    return parts[1]


async def get_caller(
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
) -> Caller:
    """Resolve the optional bearer token into a caller.

    A presented token must verify and belong to this app; it is never downgraded to guest.
    """
    token = _parse_bearer_token(request.headers.get("Authorization"))
    if token is None:
        return GUEST
    claims = parse_token(token)
    if claims.tenant_id != tenant_id:
        raise AuthInvalidError("Token does not belong to this app")
    caller = Caller(identity_id=claims.identity_id, role=claims.role)
    request.state.caller = caller
    return caller


async def require_caller(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_authenticated:
        raise AuthRequiredError("Authentication required")
    return caller


def require_role(minimum_role: Role | str):
    # Dependency factory to enforce RBAC at the route level.
    required = normalize_role(minimum_role)

    async def _dependency(caller: Caller = Depends(require_caller)) -> Caller:
        if not role_allows(role=caller.role, minimum_role=required):
            raise ForbiddenError(
                f"{required.value.capitalize()} access required",
                details={"required_role": required.value, "role": caller.role.value},
            )
        return caller

    return _dependency
