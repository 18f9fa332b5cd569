from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import AnyUrl, EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from appforge.domain.schema import FieldDef


_EMAIL_ADAPTER = TypeAdapter(EmailStr)
_URL_ADAPTER = TypeAdapter(AnyUrl)


def _violation(field: str, code: str, message: str) -> dict[str, str]:
    return {"field": field, "code": code, "message": message}


def _is_missing(value: Any) -> bool:
    return value is None or value == ""


def _is_number(value: Any) -> bool:
    # bool is an int subclass but never a number here.
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parses_as_date(value: str) -> bool:
    candidate = value.strip()
    if not candidate:
        return False
    if candidate.endswith(("Z", "z")):
        candidate = candidate[:-1] + "+00:00"
    try:
        datetime.fromisoformat(candidate)
        return True
    except ValueError:
        pass
    try:
        date.fromisoformat(candidate)
        return True
    except ValueError:
        return False


def _check_text(field: FieldDef, value: Any) -> list[dict[str, str]]:
    if not isinstance(value, str):
        return [_violation(field.name, "type", f'Field "{field.name}" must be text')]
    violations = []
    if field.min_length is not None and len(value) < field.min_length:
        violations.append(
            _violation(
                field.name,
                "min_length",
                f'Field "{field.name}" must be at least {field.min_length} characters',
            )
        )
    if field.max_length is not None and len(value) > field.max_length:
        violations.append(
            _violation(
                field.name,
                "max_length",
                f'Field "{field.name}" must be at most {field.max_length} characters',
            )
        )
    return violations


def _check_number(field: FieldDef, value: Any) -> list[dict[str, str]]:
    if not _is_number(value) or value != value:
        return [_violation(field.name, "type", f'Field "{field.name}" must be a number')]
    violations = []
    if field.min is not None and value < field.min:
        violations.append(
            _violation(field.name, "min", f'Field "{field.name}" must be at least {field.min:g}')
        )
    if field.max is not None and value > field.max:
        violations.append(
            _violation(field.name, "max", f'Field "{field.name}" must be at most {field.max:g}')
        )
    return violations


def _check_boolean(field: FieldDef, value: Any) -> list[dict[str, str]]:
    if isinstance(value, bool):
        return []
    return [_violation(field.name, "type", f'Field "{field.name}" must be a boolean')]


def _check_date(field: FieldDef, value: Any) -> list[dict[str, str]]:
    if isinstance(value, str) and _parses_as_date(value):
        return []
    return [_violation(field.name, "type", f'Field "{field.name}" must be a valid date')]


def _check_email(field: FieldDef, value: Any) -> list[dict[str, str]]:
    if isinstance(value, str):
        try:
            _EMAIL_ADAPTER.validate_python(value)
            return []
        except PydanticValidationError:
            pass
    return [_violation(field.name, "type", f'Field "{field.name}" must be a valid email')]


def _check_url(field: FieldDef, value: Any) -> list[dict[str, str]]:
    if isinstance(value, str) and "://" in value:
        try:
            _URL_ADAPTER.validate_python(value)
            return []
        except PydanticValidationError:
            pass
    return [_violation(field.name, "type", f'Field "{field.name}" must be a valid URL')]


def _check_enum(field: FieldDef, value: Any) -> list[dict[str, str]]:
    allowed = field.enum_values or []
    if isinstance(value, str) and value in allowed:
        return []
    return [
        _violation(
            field.name,
            "enum",
            f'Field "{field.name}" must be one of: {", ".join(allowed)}',
        )
    ]


_CHECKS = {
    "text": _check_text,
    "number": _check_number,
    "boolean": _check_boolean,
    "date": _check_date,
    "email": _check_email,
    "url": _check_url,
    "enum": _check_enum,
    "json": lambda field, value: [],
}


def validate(payload: dict[str, Any], schema: list[FieldDef]) -> list[dict[str, str]]:
    """Check ``payload`` against ``schema`` and return every violation found.

    Fields absent from the schema are accepted untouched; an empty schema accepts any
    object. Required fields that are missing, null or empty strings are reported once
    and skip type checks. Optional fields are skipped only when absent or null, so an
    empty string is still checked against the field type.
    """
    violations: list[dict[str, str]] = []
    for field in schema:
        value = payload.get(field.name)
        if field.required and _is_missing(value):
            violations.append(
                _violation(field.name, "required", f'Field "{field.name}" is required')
            )
            continue
        if value is None:
            continue
        violations.extend(_CHECKS[field.type](field, value))
    return violations
