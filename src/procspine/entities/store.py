"""
Entity Store — schema-validated EAV records with optimistic concurrency.

Manifesto:
    Readers must never wait on a writer that is busy validating. Validation
    runs without locks; only the final schema-version check and the write
    itself hold the type's critical section, which keeps a schema mutation
    from landing between them. Every update is a compare-and-swap on the
    record's revision marker, and a losing writer gets ``ConflictError``
    and re-reads.

    - **Complete validation reports:** every violation, not just the first
    - **Partial updates:** unspecified fields keep their values
    - **Soft-delete aware:** removed fields are kept in storage, hidden from reads
    - **Stale-schema detection:** the schema version is re-checked at commit

Architecture:
    ::

        create_entity(tenant, type, fields, issued_by)
            │  snapshot = registry.resolve_type()
            │  apply_changes(snapshot, {}, fields)         → ValidationError
            ▼  critical_section(type):
               registry.version() == snapshot.version ?  → re-validate
               repository.insert(...)                       revision = 1

        update_entity(tenant, entity_id, changes, expected_revision)
            │  current.revision == expected_revision ?     → ConflictError
            │  apply_changes(snapshot, current.fields, changes)
            ▼  critical_section(type): version check,
               repository.compare_and_swap(expected_revision)   revision + 1

Examples:
    >>> store = EntityStore(registry)
    >>> rec = store.create_entity("t1", "Person", {"email": "a@x.com"})
    >>> rec.revision
    1
    >>> rec = store.update_entity("t1", rec.id, {"age": 30}, expected_revision=1)
    >>> rec.revision
    2

Tags:
    entity-store, eav, optimistic-concurrency, validation, procspine
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import replace
from typing import Any

from procspine.core.errors import ConflictError, NotFoundError
from procspine.core.logging import get_logger
from procspine.core.timestamps import new_id, utc_now
from procspine.entities.models import EntityID, EntityRecord
from procspine.entities.repository import InMemoryRecordRepository, RecordRepository
from procspine.schema.fields import EntityTypeDef
from procspine.schema.registry import SchemaRegistry
from procspine.schema.validation import apply_changes

logger = get_logger(__name__)

COLLECTION = "entities"


class EntityStore:
    """Tenant-scoped entity records validated against the Schema Registry."""

    def __init__(
        self,
        registry: SchemaRegistry,
        repository: RecordRepository | None = None,
        max_schema_retries: int = 3,
    ):
        self.registry = registry
        self._repo = repository if repository is not None else InMemoryRecordRepository()
        self._max_schema_retries = max_schema_retries

    # =========================================================================
    # Writes
    # =========================================================================

    def create_entity(
        self,
        tenant_id: str,
        entity_type: str,
        fields: Mapping[str, Any] | None = None,
        issued_by: EntityID | None = None,
        entity_id: str | None = None,
    ) -> EntityRecord:
        """Allocate a new entity of *entity_type* (id or name) and validate it.

        Args:
            tenant_id: Owning tenant
            entity_type: Type id or type name
            fields: Initial values keyed by field id or name (may be empty)
            issued_by: Creator, matched by ``QueryDef.where_created_by``
            entity_id: Explicit id (generated if omitted)

        Raises:
            NotFoundError: Unknown type
            ValidationError: Any schema violation (all of them are reported)
        """
        definition = self.registry.resolve_type(tenant_id, entity_type)
        record_id = EntityID(type_id=definition.type_id, id=entity_id or new_id())

        def insert(values: dict, snapshot: EntityTypeDef) -> EntityRecord:
            now = utc_now()
            record = EntityRecord(
                id=record_id,
                tenant_id=tenant_id,
                fields=values,
                revision=1,
                schema_version=snapshot.version,
                created_by=issued_by,
                updated_by=issued_by,
                created_at=now,
                updated_at=now,
            )
            self._repo.insert(tenant_id, COLLECTION, _row_key(record_id), snapshot.type_id, record.to_dict())
            return record

        record, definition = self._commit(tenant_id, definition, {}, fields or {}, insert)

        logger.info(
            "entity_created",
            tenant_id=tenant_id,
            type_id=definition.type_id,
            entity_id=record.id.id,
            field_count=len(record.fields),
        )
        return record.projected(definition)

    def update_entity(
        self,
        tenant_id: str,
        entity_id: EntityID,
        changes: Mapping[str, Any],
        *,
        expected_revision: int,
        issued_by: EntityID | None = None,
    ) -> EntityRecord:
        """Apply a partial update conditioned on *expected_revision*.

        Only the touched fields are kind/validator checked; the full set of
        active required fields is checked for presence. A ``None`` value
        clears a field.

        Raises:
            NotFoundError: Unknown type or entity
            ValidationError: Any schema violation
            ConflictError: The record changed since the caller read it
        """
        current = self._load(tenant_id, entity_id)
        if current.revision != expected_revision:
            conflict = ConflictError(
                "entity", entity_id.id, expected=expected_revision, actual=current.revision
            ).with_context(tenant_id=tenant_id, type_id=entity_id.type_id)
            logger.info("entity_update_conflict", entity_id=entity_id.id, error=conflict)
            raise conflict

        def swap(values: dict, snapshot: EntityTypeDef) -> EntityRecord:
            updated = replace(
                current,
                fields=values,
                revision=current.revision + 1,
                schema_version=snapshot.version,
                updated_by=issued_by or current.updated_by,
                updated_at=utc_now(),
            )
            try:
                self._repo.compare_and_swap(
                    tenant_id, COLLECTION, _row_key(entity_id), expected_revision, updated.to_dict()
                )
            except ConflictError as exc:
                exc.with_context(tenant_id=tenant_id, type_id=entity_id.type_id)
                logger.info("entity_update_conflict", entity_id=entity_id.id, error=exc)
                raise
            return updated

        definition = self.registry.get_type(tenant_id, entity_id.type_id)
        updated, definition = self._commit(tenant_id, definition, current.fields, changes, swap)

        logger.info(
            "entity_updated",
            tenant_id=tenant_id,
            type_id=entity_id.type_id,
            entity_id=entity_id.id,
            revision=updated.revision,
            touched=len(changes),
        )
        return updated.projected(definition)

    # =========================================================================
    # Reads
    # =========================================================================

    def get_entity(
        self,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        include_removed: bool = False,
    ) -> EntityRecord:
        """Read one entity; soft-deleted fields are hidden unless *include_removed*.

        Raises:
            NotFoundError: Unknown type, or no such entity of that type
        """
        definition = self.registry.resolve_type(tenant_id, entity_type)
        record = self._load(tenant_id, EntityID(definition.type_id, entity_id))
        return record.projected(definition, include_removed=include_removed)

    def get(self, tenant_id: str, entity_id: EntityID, include_removed: bool = False) -> EntityRecord:
        """Read one entity by its composite id."""
        return self.get_entity(tenant_id, entity_id.type_id, entity_id.id, include_removed)

    def list_entities(
        self,
        tenant_id: str,
        entity_type: str,
        offset: int = 0,
        limit: int | None = None,
        include_removed: bool = False,
    ) -> list[EntityRecord]:
        """List entities of a type in creation order."""
        definition = self.registry.resolve_type(tenant_id, entity_type)
        rows = self._repo.list(tenant_id, COLLECTION, group=definition.type_id, offset=offset, limit=limit)
        return [
            EntityRecord.from_dict(row.body).projected(definition, include_removed=include_removed)
            for row in rows
        ]

    # =========================================================================
    # Internals
    # =========================================================================

    def _load(self, tenant_id: str, entity_id: EntityID) -> EntityRecord:
        row = self._repo.get(tenant_id, COLLECTION, _row_key(entity_id))
        if row is None or row.group != entity_id.type_id:
            raise NotFoundError("entity", entity_id.id).with_context(
                tenant_id=tenant_id, type_id=entity_id.type_id
            )
        return EntityRecord.from_dict(row.body)

    def _commit(
        self,
        tenant_id: str,
        definition: EntityTypeDef,
        current: Mapping[str, Any],
        changes: Mapping[str, Any],
        write: Callable[[dict, EntityTypeDef], EntityRecord],
    ) -> tuple[EntityRecord, EntityTypeDef]:
        """Validate against *definition* and hand the values to *write*.

        Validation runs unlocked. The version re-check and *write* run inside
        the type's critical section, so no schema mutation lands between
        them; if the schema moved, validation is redone on the new snapshot.
        """
        for _ in range(self._max_schema_retries):
            values = apply_changes(definition, current, changes)
            with self.registry.critical_section(tenant_id, definition.type_id, holder="entity_write"):
                latest = self.registry.get_type(tenant_id, definition.type_id)
                if latest.version == definition.version:
                    return write(values, definition), definition
            logger.debug(
                "entity_schema_stale",
                tenant_id=tenant_id,
                type_id=definition.type_id,
                validated_version=definition.version,
                current_version=latest.version,
            )
            definition = latest
        raise ConflictError(
            "entity_type",
            definition.type_id,
            message=f"Schema of {definition.name} kept changing during validation",
        ).with_context(tenant_id=tenant_id)


def _row_key(entity_id: EntityID) -> str:
    """Rows are keyed by the composite id; bare ids may repeat across types."""
    return str(entity_id)


__all__ = ["EntityStore", "COLLECTION"]
