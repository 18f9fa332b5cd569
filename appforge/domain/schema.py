from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


FieldType = Literal["text", "number", "boolean", "date", "json", "email", "url", "enum"]

# Lowercase identifiers that cannot start with a digit; reused as the storage-facing name.
COLLECTION_NAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_]*$")
COLLECTION_NAME_MAX_LENGTH = 64


class RelationDef(BaseModel):
    model_config = ConfigDict(extra="forbid")

    collection: str
    field: str = "id"


class FieldDef(BaseModel):
    """One declarative field of a collection schema.

    Camel-case aliases match the payloads produced by the app builder
    (``minLength``, ``enumValues``); snake_case is accepted as well.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(min_length=1, max_length=64)
    type: FieldType = "text"
    required: bool = False
    default: Any = None
    min: float | None = None
    max: float | None = None
    min_length: int | None = Field(default=None, alias="minLength", ge=0)
    max_length: int | None = Field(default=None, alias="maxLength", ge=0)
    enum_values: list[str] | None = Field(default=None, alias="enumValues")
    relation: RelationDef | None = None

    @model_validator(mode="after")
    def _enum_requires_values(self) -> "FieldDef":
        # An enum with no allowed values would reject every payload.
        if self.type == "enum" and not self.enum_values:
            raise ValueError(f'Enum field "{self.name}" must declare enum_values')
        return self


class CollectionSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    owner_read_only: bool = Field(default=False, alias="ownerReadOnly")
    owner_write_only: bool = Field(default=False, alias="ownerWriteOnly")
    public_read: bool = Field(default=False, alias="publicRead")
    admin_write_only: bool = Field(default=False, alias="adminWriteOnly")


class CollectionSpec(BaseModel):
    """Schema plus settings attached to a collection by an admin."""

    model_config = ConfigDict(extra="forbid")

    schema_fields: list[FieldDef] = Field(default_factory=list, alias="schema")
    settings: CollectionSettings | None = None
    description: str | None = None

    @field_validator("schema_fields")
    @classmethod
    def _unique_field_names(cls, fields: list[FieldDef]) -> list[FieldDef]:
        seen: set[str] = set()
        for field in fields:
            if field.name in seen:
                raise ValueError(f'Duplicate field "{field.name}"')
            seen.add(field.name)
        return fields


def parse_schema(raw: list[dict[str, Any]] | None) -> list[FieldDef]:
    # Stored schemas were validated on write; re-hydrate them for the validator.
    return [FieldDef.model_validate(entry) for entry in raw or []]


def parse_settings(raw: dict[str, Any] | None) -> CollectionSettings:
    return CollectionSettings.model_validate(raw or {})


def dump_schema(fields: list[FieldDef]) -> list[dict[str, Any]]:
    return [field.model_dump(by_alias=True, exclude_none=True) for field in fields]


def dump_settings(settings: CollectionSettings) -> dict[str, Any]:
    return settings.model_dump(by_alias=True)


def is_valid_collection_name(name: str) -> bool:
    return bool(name) and len(name) <= COLLECTION_NAME_MAX_LENGTH and bool(COLLECTION_NAME_PATTERN.match(name))
