"""Field-set validation against an entity type snapshot.

Shared by the Entity Store (entity records) and the Process Engine (the
field values carried by an event instance, since a process definition is
an entity type too). Validation never stops at the first problem: the
caller gets every violation at once.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from procspine.core.errors import ValidationError, Violation
from procspine.core.values import Value
from procspine.schema.fields import EntityTypeDef


def normalize_changes(
    definition: EntityTypeDef,
    changes: Mapping[str, Any],
) -> tuple[dict[str, Value], list[Violation]]:
    """Resolve field references (id or name) and wrap raw values.

    Returns the changes keyed by field id plus any violations found while
    resolving: unknown fields, writes to soft-deleted fields and values that
    cannot be represented as a :class:`Value`.
    """
    resolved: dict[str, Value] = {}
    violations: list[Violation] = []

    for ref, raw in changes.items():
        field_def = definition.find_field(ref)
        if field_def is None:
            violations.append(Violation(ref, "unknown_field", f"unknown field {ref!r}"))
            continue
        if field_def.removed:
            violations.append(
                Violation(field_def.id, "removed_field", f"field {field_def.name!r} is removed")
            )
            continue
        try:
            resolved[field_def.id] = Value.of(raw)
        except (TypeError, ValueError) as exc:
            violations.append(
                Violation(field_def.id, "type_mismatch", f"{field_def.name}: {exc}")
            )
    return resolved, violations


def check_values(
    definition: EntityTypeDef,
    merged: Mapping[str, Value],
    touched: Iterable[str],
) -> list[Violation]:
    """Check touched fields for kind/validator problems and every active
    required field for presence.

    A NULL value clears the field; it is never kind-checked.
    """
    violations: list[Violation] = []

    for field_id in touched:
        field_def = definition.get_field(field_id)
        value = merged.get(field_id)
        if value is None or value.is_null:
            continue
        if value.kind not in field_def.type.accepted_kinds:
            violations.append(
                Violation(
                    field_id,
                    "type_mismatch",
                    f"{field_def.name} expects {field_def.type.value}, got {value.kind.value}",
                )
            )
            continue
        if field_def.validator is not None:
            reason = field_def.validator.check(value)
            if reason is not None:
                violations.append(
                    Violation(field_id, "validator_failed", f"{field_def.name} {reason}")
                )

    for field_def in definition.required_fields:
        value = merged.get(field_def.id)
        if value is None or value.is_null:
            violations.append(
                Violation(field_def.id, "missing_required", f"{field_def.name} is required")
            )

    return violations


def apply_changes(
    definition: EntityTypeDef,
    current: Mapping[str, Value],
    changes: Mapping[str, Any],
) -> dict[str, Value]:
    """Merge *changes* into *current* and validate the result.

    Unspecified fields keep their values (soft-deleted ones included);
    NULL values drop the field.

    Raises:
        ValidationError: With the complete list of violations
    """
    resolved, violations = normalize_changes(definition, changes)
    merged = dict(current)
    merged.update(resolved)
    violations.extend(check_values(definition, merged, list(resolved)))
    if violations:
        raise ValidationError.from_violations(violations).with_context(
            tenant_id=definition.tenant_id, type_id=definition.type_id
        )
    return {fid: v for fid, v in merged.items() if not v.is_null}


__all__ = ["normalize_changes", "check_values", "apply_changes"]
