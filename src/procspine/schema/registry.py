"""
Schema Registry — tenant-scoped entity type definitions.

The registry owns every :class:`EntityTypeDef` (and, through the process
layer, every ``ProcessDef``, which is an entity type extended with steps).
Definitions are immutable snapshots; each successful mutation publishes a
new snapshot with ``version + 1``. The Entity Store compares that version
before committing to detect validation against a stale snapshot.

Manifesto:
    - **Soft-delete only:** Removing a field never drops its id or stored values
    - **Serialized mutations:** One writer per (tenant, type) at a time
    - **Snapshot reads:** Readers never block on writers and never see half a mutation
    - **Explicit versions:** Every change is observable as a version bump

Architecture:
    ::

        SchemaRegistry
          ├── create_type(tenant, name, fields)       → EntityTypeDef(version=1)
          ├── add_field / modify_field                → FieldDef
          ├── set_required / remove_field / restore_field
          ├── get_type / get_type_by_name / resolve_type / list_types
          ├── version(tenant, type_id)
          └── mutate(tenant, type_id, fn)             ← shared by the process variant

        mutations:  KeyedLockArena[("schema", tenant, type_id)]
                        │  read snapshot → fn(snapshot) → publish(version+1)
                        ▼
                    _types[(tenant, type_id)]

Examples:
    >>> registry = SchemaRegistry()
    >>> person = registry.create_type("t1", "Person", [
    ...     FieldDef(id="f-email", name="email", type=FieldType.STRING, is_required=True),
    ... ])
    >>> registry.remove_field("t1", person.type_id, "f-email").removed
    True
    >>> registry.restore_field("t1", person.type_id, "f-email").removed
    False
    >>> registry.version("t1", person.type_id)
    3

Tags:
    schema, eav, registry, soft-delete, procspine
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from typing import TypeVar

from procspine.core.errors import NotFoundError, ValidationError, Violation
from procspine.core.locks import KeyedLockArena
from procspine.core.logging import get_logger
from procspine.core.timestamps import new_id
from procspine.schema.fields import EntityTypeDef, FieldDef, FieldType
from procspine.schema.validators import ValidatorSpec

logger = get_logger(__name__)

D = TypeVar("D", bound=EntityTypeDef)

_UNSET = object()


class SchemaRegistry:
    """Thread-safe registry of tenant-scoped entity type definitions."""

    def __init__(self, locks: KeyedLockArena | None = None):
        self._types: dict[tuple[str, str], EntityTypeDef] = {}
        self._names: dict[tuple[str, str], str] = {}
        self._index_lock = threading.RLock()
        self._locks = locks or KeyedLockArena("schema")

    # =========================================================================
    # Creation
    # =========================================================================

    def create_type(
        self,
        tenant_id: str,
        name: str,
        fields: list[FieldDef] | None = None,
    ) -> EntityTypeDef:
        """Create a new entity type with an initial (possibly empty) field list.

        Raises:
            ValidationError: If the name is taken in this tenant or fields clash
        """
        try:
            definition = EntityTypeDef(
                type_id=new_id(),
                tenant_id=tenant_id,
                name=name,
                fields=tuple(fields or ()),
            )
        except ValueError as exc:
            raise ValidationError(
                str(exc),
                violations=[Violation("", "invalid_definition", str(exc))],
            ).with_context(tenant_id=tenant_id) from exc
        return self.register(definition)

    def register(self, definition: D) -> D:
        """Insert a pre-built definition (entity type or process variant)."""
        key = (definition.tenant_id, definition.type_id)
        name_key = (definition.tenant_id, definition.name)
        with self._index_lock:
            if name_key in self._names:
                raise ValidationError(
                    f"Type name already exists in tenant: {definition.name}",
                    violations=[Violation("", "duplicate_name", f"type name {definition.name!r} is taken")],
                ).with_context(tenant_id=definition.tenant_id)
            if key in self._types:
                raise ValidationError(
                    f"Type id already registered: {definition.type_id}",
                    violations=[Violation("", "duplicate_id", f"type id {definition.type_id!r} is taken")],
                ).with_context(tenant_id=definition.tenant_id)
            self._types[key] = definition
            self._names[name_key] = definition.type_id

        logger.info(
            "entity_type_created",
            tenant_id=definition.tenant_id,
            type_id=definition.type_id,
            name=definition.name,
            kind=type(definition).__name__,
            field_count=len(definition.fields),
        )
        return definition

    # =========================================================================
    # Reads
    # =========================================================================

    def get_type(self, tenant_id: str, type_id: str) -> EntityTypeDef:
        with self._index_lock:
            definition = self._types.get((tenant_id, type_id))
        if definition is None:
            raise NotFoundError("entity_type", type_id).with_context(tenant_id=tenant_id)
        return definition

    def get_type_by_name(self, tenant_id: str, name: str) -> EntityTypeDef:
        with self._index_lock:
            type_id = self._names.get((tenant_id, name))
        if type_id is None:
            raise NotFoundError("entity_type", name).with_context(tenant_id=tenant_id)
        return self.get_type(tenant_id, type_id)

    def resolve_type(self, tenant_id: str, type_ref: str) -> EntityTypeDef:
        """Resolve a type by id, falling back to its name."""
        with self._index_lock:
            if (tenant_id, type_ref) in self._types:
                return self._types[(tenant_id, type_ref)]
            type_id = self._names.get((tenant_id, type_ref))
        if type_id is None:
            raise NotFoundError("entity_type", type_ref).with_context(tenant_id=tenant_id)
        return self.get_type(tenant_id, type_id)

    def type_name(self, tenant_id: str, type_id: str) -> str:
        return self.get_type(tenant_id, type_id).name

    def list_types(self, tenant_id: str, kind: type[D] = EntityTypeDef) -> list[D]:
        """List definitions in a tenant, optionally restricted to a subclass."""
        with self._index_lock:
            return [
                d
                for (tenant, _), d in self._types.items()
                if tenant == tenant_id and isinstance(d, kind)
            ]

    def version(self, tenant_id: str, type_id: str) -> int:
        return self.get_type(tenant_id, type_id).version

    # =========================================================================
    # Mutations
    # =========================================================================

    @contextmanager
    def critical_section(self, tenant_id: str, type_id: str, holder: str = "") -> Iterator[None]:
        """Exclusive section for one (tenant, type); mutations of that type wait."""
        with self._locks.hold(("schema", tenant_id, type_id), holder=holder):
            yield

    def mutate(
        self,
        tenant_id: str,
        type_id: str,
        fn: Callable[[D], D | None],
        holder: str = "mutate",
    ) -> D:
        """Apply *fn* to the current snapshot under the type's critical section.

        *fn* returns the new snapshot (its version is set here) or ``None``
        when nothing changed, in which case the version is left alone.
        """
        with self.critical_section(tenant_id, type_id, holder):
            current = self.get_type(tenant_id, type_id)
            updated = fn(current)
            if updated is None or updated == current:
                return current
            updated = replace(updated, version=current.version + 1)
            with self._index_lock:
                self._types[(tenant_id, type_id)] = updated
        logger.info(
            "entity_type_mutated",
            tenant_id=tenant_id,
            type_id=type_id,
            operation=holder,
            version=updated.version,
        )
        return updated

    def add_field(
        self,
        tenant_id: str,
        type_id: str,
        name: str,
        type: FieldType,
        is_required: bool = False,
        description: str = "",
        validator: ValidatorSpec | None = None,
        field_id: str | None = None,
    ) -> FieldDef:
        """Append a new field. Existing records are not retroactively invalidated."""
        new_field = FieldDef(
            id=field_id or new_id(),
            name=name,
            type=type,
            is_required=is_required,
            description=description,
            validator=validator,
        )

        def apply(current: EntityTypeDef) -> EntityTypeDef:
            if current.has_field(new_field.id):
                raise _violation(current, new_field.id, "duplicate_id", f"field id {new_field.id!r} exists")
            if current.find_field(name) is not None:
                raise _violation(current, new_field.id, "duplicate_name", f"field name {name!r} exists")
            return current.with_field(new_field)

        self.mutate(tenant_id, type_id, apply, holder="add_field")
        return new_field

    def modify_field(
        self,
        tenant_id: str,
        type_id: str,
        field_id: str,
        new_name: str | None = None,
        new_type: FieldType | None = None,
        new_is_required: bool | None = None,
        new_description: str | None = None,
        new_validator: ValidatorSpec | None | object = _UNSET,
    ) -> FieldDef:
        """Rename, retype or flip the required flag of a field.

        Raises:
            NotFoundError: Unknown type or field id
            ValidationError: Field is soft-deleted, or the new name is taken
        """

        def apply(current: EntityTypeDef) -> EntityTypeDef:
            existing = current.get_field(field_id)
            if existing.removed:
                raise _violation(current, field_id, "removed_field", f"field {existing.name!r} is removed")
            changes = {}
            if new_name is not None and new_name != existing.name:
                if current.find_field(new_name) is not None:
                    raise _violation(current, field_id, "duplicate_name", f"field name {new_name!r} exists")
                changes["name"] = new_name
            if new_type is not None:
                changes["type"] = FieldType(new_type)
            if new_is_required is not None:
                changes["is_required"] = new_is_required
            if new_description is not None:
                changes["description"] = new_description
            if new_validator is not _UNSET:
                changes["validator"] = new_validator
            updated = replace(existing, **changes)
            if updated == existing:
                return None
            return current.with_field(updated)

        return self.mutate(tenant_id, type_id, apply, holder="modify_field").get_field(field_id)

    def set_required(
        self,
        tenant_id: str,
        type_id: str,
        field_id: str,
        required: bool = True,
    ) -> FieldDef:
        """Idempotently set the required flag. Soft-deleted fields are rejected."""

        def apply(current: EntityTypeDef) -> EntityTypeDef | None:
            existing = current.get_field(field_id)
            if existing.removed:
                raise _violation(current, field_id, "removed_field", f"field {existing.name!r} is removed")
            if existing.is_required == required:
                return None
            return current.with_field(replace(existing, is_required=required))

        return self.mutate(tenant_id, type_id, apply, holder="set_required").get_field(field_id)

    def remove_field(self, tenant_id: str, type_id: str, field_id: str) -> FieldDef:
        """Soft-delete a field: excluded from validation and projections, values kept."""

        def apply(current: EntityTypeDef) -> EntityTypeDef | None:
            existing = current.get_field(field_id)
            if existing.removed:
                return None
            return current.with_field(replace(existing, removed=True))

        return self.mutate(tenant_id, type_id, apply, holder="remove_field").get_field(field_id)

    def restore_field(self, tenant_id: str, type_id: str, field_id: str) -> FieldDef:
        """Undo a soft-delete; required checks apply again from now on."""

        def apply(current: EntityTypeDef) -> EntityTypeDef | None:
            existing = current.get_field(field_id)
            if not existing.removed:
                return None
            return current.with_field(replace(existing, removed=False))

        return self.mutate(tenant_id, type_id, apply, holder="restore_field").get_field(field_id)


def _violation(definition: EntityTypeDef, field_id: str, code: str, message: str) -> ValidationError:
    return ValidationError(
        message,
        violations=[Violation(field_id, code, message)],
    ).with_context(tenant_id=definition.tenant_id, type_id=definition.type_id)


__all__ = ["SchemaRegistry"]
