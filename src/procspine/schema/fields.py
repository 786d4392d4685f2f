"""Entity type definitions — field definitions and type snapshots.

Both classes are frozen: the registry publishes a new snapshot on every
mutation, so a reader holding an :class:`EntityTypeDef` always sees one
consistent version of the schema.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from procspine.core.errors import NotFoundError
from procspine.core.timestamps import from_iso8601, to_iso8601, utc_now
from procspine.core.values import ValueKind
from procspine.schema.validators import ValidatorSpec


class FieldType(str, Enum):
    """Declared type of an entity field."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    JSON = "json"

    @property
    def accepted_kinds(self) -> frozenset[ValueKind]:
        return _ACCEPTED_KINDS[self]


_ACCEPTED_KINDS: dict[FieldType, frozenset[ValueKind]] = {
    FieldType.STRING: frozenset({ValueKind.STRING}),
    FieldType.NUMBER: frozenset({ValueKind.NUMBER}),
    FieldType.BOOLEAN: frozenset({ValueKind.BOOLEAN}),
    FieldType.DATE: frozenset({ValueKind.DATE}),
    FieldType.JSON: frozenset({ValueKind.OBJECT, ValueKind.ARRAY}),
}


@dataclass(frozen=True)
class FieldDef:
    """
    One field of an entity type.

    ``id`` is stable for the lifetime of the owning type; soft-deleting a
    field (``removed=True``) keeps the id and every stored value.
    """

    id: str
    name: str
    type: FieldType
    is_required: bool = False
    description: str = ""
    validator: ValidatorSpec | None = None
    removed: bool = False

    def __post_init__(self):
        if not self.id:
            raise ValueError("Field id must be non-empty.")
        if not self.name or not isinstance(self.name, str):
            raise ValueError("Field name must be a non-empty string.")
        if not isinstance(self.type, FieldType):
            object.__setattr__(self, "type", FieldType(self.type))

    @property
    def is_active(self) -> bool:
        return not self.removed

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "is_required": self.is_required,
            "description": self.description,
            "validator": self.validator.to_dict() if self.validator else None,
            "removed": self.removed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldDef:
        validator = data.get("validator")
        return cls(
            id=data["id"],
            name=data["name"],
            type=FieldType(data["type"]),
            is_required=bool(data.get("is_required", False)),
            description=data.get("description", ""),
            validator=ValidatorSpec.from_dict(validator) if validator else None,
            removed=bool(data.get("removed", False)),
        )


@dataclass(frozen=True)
class EntityTypeDef:
    """
    A tenant-scoped entity type: an ordered sequence of field definitions.

    Fields:
        type_id:    Stable identifier of the type
        tenant_id:  Owning tenant
        name:       Human name, unique per tenant ("Person", "Equipment", ...)
        fields:     Ordered field definitions, soft-deleted ones included
        version:    Schema version, incremented by every successful mutation
        created_at: When the type was created
    """

    type_id: str
    tenant_id: str
    name: str
    fields: tuple[FieldDef, ...] = ()
    version: int = 1
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if not self.type_id:
            raise ValueError("type_id must be non-empty.")
        if not self.tenant_id:
            raise ValueError("tenant_id must be non-empty.")
        if not self.name:
            raise ValueError("Type name must be non-empty.")
        ids = [f.id for f in self.fields]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate field ids in type '{self.name}'.")
        names = [f.name for f in self.fields]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate field names in type '{self.name}'.")

    # ── Lookup ───────────────────────────────────────────────────

    def get_field(self, field_id: str) -> FieldDef:
        """Return a field by id (soft-deleted fields included)."""
        for f in self.fields:
            if f.id == field_id:
                return f
        raise NotFoundError("field", field_id).with_context(
            tenant_id=self.tenant_id, type_id=self.type_id
        )

    def find_field(self, ref: str) -> FieldDef | None:
        """Find a field by id, then by name. Soft-deleted fields included."""
        for f in self.fields:
            if f.id == ref:
                return f
        for f in self.fields:
            if f.name == ref:
                return f
        return None

    def has_field(self, field_id: str) -> bool:
        return any(f.id == field_id for f in self.fields)

    @property
    def active_fields(self) -> tuple[FieldDef, ...]:
        return tuple(f for f in self.fields if f.is_active)

    @property
    def removed_fields(self) -> tuple[FieldDef, ...]:
        return tuple(f for f in self.fields if f.removed)

    @property
    def required_fields(self) -> tuple[FieldDef, ...]:
        return tuple(f for f in self.fields if f.is_active and f.is_required)

    # ── Copy-on-write helpers (used by the registry) ─────────────

    def with_field(self, new: FieldDef) -> EntityTypeDef:
        """Return a snapshot with *new* replacing the field of the same id (or appended)."""
        if self.has_field(new.id):
            fields = tuple(new if f.id == new.id else f for f in self.fields)
        else:
            fields = self.fields + (new,)
        return replace(self, fields=fields, version=self.version + 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type_id": self.type_id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "fields": [f.to_dict() for f in self.fields],
            "version": self.version,
            "created_at": to_iso8601(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EntityTypeDef:
        return cls(
            type_id=data["type_id"],
            tenant_id=data["tenant_id"],
            name=data["name"],
            fields=tuple(FieldDef.from_dict(f) for f in data.get("fields", [])),
            version=int(data.get("version", 1)),
            created_at=from_iso8601(data.get("created_at")) or utc_now(),
        )


__all__ = ["FieldType", "FieldDef", "EntityTypeDef"]
