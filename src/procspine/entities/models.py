"""Entity records — EAV rows validated against an entity type."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from procspine.core.timestamps import from_iso8601, to_iso8601, utc_now
from procspine.core.values import Value
from procspine.schema.fields import EntityTypeDef


@dataclass(frozen=True)
class EntityID:
    """Composite identity of an entity: its type plus its own id."""

    type_id: str
    id: str

    def __post_init__(self):
        if not self.type_id:
            raise ValueError("EntityID.type_id must be non-empty.")
        if not self.id:
            raise ValueError("EntityID.id must be non-empty.")

    def __str__(self) -> str:
        return f"{self.type_id}/{self.id}"

    def to_dict(self) -> dict[str, str]:
        return {"type_id": self.type_id, "id": self.id}

    @classmethod
    def from_dict(cls, data: dict[str, str]) -> EntityID:
        return cls(type_id=data["type_id"], id=data["id"])


@dataclass(frozen=True)
class EntityRecord:
    """
    One entity: a dynamic set of ``(field_id, value)`` pairs.

    ``revision`` is the optimistic-concurrency marker; it starts at 1 and
    every successful update increments it. ``schema_version`` is the type
    version the record was last validated against.
    """

    id: EntityID
    tenant_id: str
    fields: dict[str, Value] = field(default_factory=dict)
    revision: int = 1
    schema_version: int = 1
    created_by: EntityID | None = None
    updated_by: EntityID | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    __hash__ = None

    @property
    def type_id(self) -> str:
        return self.id.type_id

    def get(self, field_id: str) -> Value | None:
        return self.fields.get(field_id)

    def has_value(self, field_id: str) -> bool:
        value = self.fields.get(field_id)
        return value is not None and not value.is_null

    def projected(self, definition: EntityTypeDef, include_removed: bool = False) -> EntityRecord:
        """Return a copy holding only the fields visible under *definition*."""
        visible = {
            f.id for f in definition.fields if include_removed or f.is_active
        }
        return replace(
            self,
            fields={fid: v for fid, v in self.fields.items() if fid in visible},
        )

    def values_by_name(self, definition: EntityTypeDef) -> dict[str, Any]:
        """Active field values keyed by field name, unwrapped to Python objects."""
        return {
            f.name: self.fields[f.id].to_python()
            for f in definition.active_fields
            if f.id in self.fields
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id.to_dict(),
            "tenant_id": self.tenant_id,
            "fields": [{"id": fid, "value": v.to_wire()} for fid, v in self.fields.items()],
            "revision": self.revision,
            "schema_version": self.schema_version,
            "created_by": self.created_by.to_dict() if self.created_by else None,
            "updated_by": self.updated_by.to_dict() if self.updated_by else None,
            "created_at": to_iso8601(self.created_at),
            "updated_at": to_iso8601(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EntityRecord:
        return cls(
            id=EntityID.from_dict(data["id"]),
            tenant_id=data["tenant_id"],
            fields={item["id"]: Value.of(item["value"]) for item in data.get("fields", [])},
            revision=int(data.get("revision", 1)),
            schema_version=int(data.get("schema_version", 1)),
            created_by=EntityID.from_dict(data["created_by"]) if data.get("created_by") else None,
            updated_by=EntityID.from_dict(data["updated_by"]) if data.get("updated_by") else None,
            created_at=from_iso8601(data.get("created_at")) or utc_now(),
            updated_at=from_iso8601(data.get("updated_at")) or utc_now(),
        )


__all__ = ["EntityID", "EntityRecord"]
