from __future__ import annotations

from typing import Any

from appforge.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _response("Unauthorized", code="AUTH_REQUIRED", message="Authentication required"),
    403: _response("Forbidden", code="FORBIDDEN", message="Admin access required"),
    404: _response("Not found", code="NOT_FOUND", message="Item not found"),
    409: _response("Conflict", code="CONFLICT", message="An account with this email already exists"),
    422: _response(
        "Validation error",
        code="VALIDATION_ERROR",
        message='Validation failed: Field "title" is required',
        details={"violations": [{"field": "title", "code": "required", "message": 'Field "title" is required'}]},
    ),
    429: _response(
        "Rate limited",
        code="RATE_LIMITED",
        message="Rate limit exceeded. Try again in 42s",
        details={"retry_after_seconds": 42, "preset": "data-write", "limit": 30, "remaining": 0},
    ),
    500: _response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
}
