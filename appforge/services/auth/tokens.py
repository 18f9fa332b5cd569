from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import secrets

import jwt

from appforge.core.config import get_settings
from appforge.core.errors import AuthInvalidError
from appforge.services.auth.roles import Role, normalize_role


RESET_TOKEN_BYTES = 32


@dataclass(frozen=True)
class TokenClaims:
    identity_id: str
    tenant_id: str
    role: Role
    issued_at: datetime
    expires_at: datetime


def issue_token(
    *,
    identity_id: str,
    tenant_id: str,
    role: Role | str,
    now: datetime | None = None,
) -> str:
    # Stateless session token; revocation only happens through secret rotation.
    settings = get_settings()
    issued_at = now or datetime.now(timezone.utc)
    claims = {
        "sub": identity_id,
        "app": tenant_id,
        "role": normalize_role(role).value,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + timedelta(days=settings.token_ttl_days)).timestamp()),
    }
    return jwt.encode(claims, settings.token_secret, algorithm=settings.token_algorithm)


def parse_token(token: str) -> TokenClaims:
    """Verify signature and expiry, then return the embedded identity.

    Any failure raises ``AuthInvalidError``; a token is never partially trusted.
    """
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.token_secret,
            algorithms=[settings.token_algorithm],
            options={"require": ["sub", "app", "role", "iat", "exp"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthInvalidError("Token expired") from exc
    except jwt.PyJWTError as exc:
        raise AuthInvalidError("Invalid token") from exc

    identity_id = payload.get("sub")
    tenant_id = payload.get("app")
    if not isinstance(identity_id, str) or not isinstance(tenant_id, str):
        raise AuthInvalidError("Invalid token")
    try:
        role = normalize_role(str(payload.get("role")))
    except ValueError as exc:
        raise AuthInvalidError("Invalid token") from exc
    return TokenClaims(
        identity_id=identity_id,
        tenant_id=tenant_id,
        role=role,
        issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
        expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
    )


def generate_reset_token() -> str:
    return secrets.token_hex(RESET_TOKEN_BYTES)


def hash_reset_token(raw_token: str) -> str:
    # Use SHA-256 for deterministic, non-reversible token storage.
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()
