from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTH_REQUIRED = "AUTH_REQUIRED"
    AUTH_INVALID = "AUTH_INVALID"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    RATE_LIMITED = "RATE_LIMITED"
    INTERNAL = "INTERNAL_ERROR"


class AppForgeError(Exception):
    """Base error for AppForge; carries a stable kind plus structured details."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.kind.value, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(AppForgeError):
    """Malformed or out-of-policy input; details always enumerate every violation."""

    kind = ErrorKind.VALIDATION_ERROR

    def __init__(
        self,
        message: str,
        *,
        violations: list[dict[str, Any]] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        merged = dict(details or {})
        if violations is not None:
            merged["violations"] = violations
        super().__init__(message, details=merged or None)
        self.violations = violations or []


class AuthRequiredError(AppForgeError):
    """No credential presented where one is required."""

    kind = ErrorKind.AUTH_REQUIRED


class AuthInvalidError(AppForgeError):
    """Credential present but unverifiable or expired."""

    kind = ErrorKind.AUTH_INVALID


class ForbiddenError(AppForgeError):
    """Verified identity lacks the privilege for this operation."""

    kind = ErrorKind.FORBIDDEN


class NotFoundError(AppForgeError):
    """Resource absent or filtered away by access policy."""

    kind = ErrorKind.NOT_FOUND


class ConflictError(AppForgeError):
    """Uniqueness violation."""

    kind = ErrorKind.CONFLICT


class RateLimitedError(AppForgeError):
    """Bucket exhausted; carries a retry hint in whole seconds."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, *, retry_after_seconds: int, details: dict[str, Any] | None = None) -> None:
        merged = {"retry_after_seconds": retry_after_seconds, **(details or {})}
        super().__init__(message, details=merged)
        self.retry_after_seconds = retry_after_seconds


class InternalError(AppForgeError):
    """Storage or unexpected failure; never retried inside the core."""

    kind = ErrorKind.INTERNAL
