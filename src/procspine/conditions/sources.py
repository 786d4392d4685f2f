"""Evaluation sources — document descriptors, event views and the scope.

Documents are owned by an external store; the condition engine only needs
read access to their descriptors, through :class:`DocumentLookup`.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import PurePosixPath
from typing import Any, Protocol, runtime_checkable

from procspine.core.errors import NotFoundError
from procspine.core.timestamps import utc_now
from procspine.core.values import Value
from procspine.entities.models import EntityID
from procspine.schema.fields import EntityTypeDef


@dataclass(frozen=True)
class DocumentDesc:
    """Read-only descriptor of an externally stored document.

    ``file_type`` is derived from the name's extension when not given
    (``"report.PDF"`` → ``"pdf"``).
    """

    id: str
    name: str
    size_bytes: int = 0
    last_modified: datetime = field(default_factory=utc_now)
    uploader_id: EntityID | None = None
    metadata: dict[str, Value] = field(default_factory=dict)
    file_type: str = ""

    __hash__ = None

    def __post_init__(self):
        if not self.file_type:
            object.__setattr__(self, "file_type", PurePosixPath(self.name).suffix.lstrip(".").lower())
        object.__setattr__(
            self, "metadata", {str(k): Value.of(v) for k, v in self.metadata.items()}
        )

    def attribute(self, name: str) -> Value | None:
        """Return a built-in attribute or metadata entry, or None if absent."""
        match name:
            case "id" | "name" | "file_type":
                return Value.string(getattr(self, name))
            case "size_bytes":
                return Value.number(self.size_bytes)
            case "last_modified":
                return Value.date(self.last_modified)
        return self.metadata.get(name)


@runtime_checkable
class DocumentLookup(Protocol):
    """Resolves a document descriptor by id within a tenant."""

    def get_document(self, tenant_id: str, document_id: str) -> DocumentDesc:
        ...


class InMemoryDocumentLookup:
    """Dict-backed document lookup."""

    def __init__(self):
        self._docs: dict[tuple[str, str], DocumentDesc] = {}
        self._lock = threading.Lock()

    def add(self, tenant_id: str, document: DocumentDesc) -> DocumentDesc:
        with self._lock:
            self._docs[(tenant_id, document.id)] = document
        return document

    def get_document(self, tenant_id: str, document_id: str) -> DocumentDesc:
        with self._lock:
            doc = self._docs.get((tenant_id, document_id))
        if doc is None:
            raise NotFoundError("document", document_id).with_context(tenant_id=tenant_id)
        return doc


@dataclass(frozen=True)
class EventView:
    """What a condition can see of a running event instance."""

    id: str
    process_id: str
    started_at: datetime
    definition: EntityTypeDef
    fields: dict[str, Value] = field(default_factory=dict)
    started_by: EntityID | None = None

    __hash__ = None

    def attribute(self, ref: str) -> Value | None:
        """Resolve *ref* as an active process field (id or name), then a built-in.

        Returns NULL for a known field without a value and None when *ref*
        names nothing at all.
        """
        field_def = self.definition.find_field(ref)
        if field_def is not None and field_def.is_active:
            return self.fields.get(field_def.id, Value.null())
        match ref:
            case "id" | "process_id":
                return Value.string(getattr(self, ref))
            case "started_at":
                return Value.date(self.started_at)
        return None


@dataclass(frozen=True)
class EvaluationScope:
    """The instances a condition tree is evaluated against.

    Entities are tried in binding order; the first one whose type defines
    the queried field answers the query.
    """

    tenant_id: str
    entities: tuple[EntityID, ...] = ()
    documents: tuple[str, ...] = ()
    event: EventView | None = None

    __hash__ = None

    def __post_init__(self):
        object.__setattr__(self, "entities", tuple(self.entities))
        object.__setattr__(self, "documents", tuple(self.documents))

    def describe(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "entities": [str(e) for e in self.entities],
            "documents": list(self.documents),
            "event_id": self.event.id if self.event else None,
        }


__all__ = [
    "DocumentDesc",
    "DocumentLookup",
    "InMemoryDocumentLookup",
    "EventView",
    "EvaluationScope",
]
