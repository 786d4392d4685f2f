"""Pydantic models for declarative definitions (dict / YAML).

Entity types, queries, condition trees and processes can be authored as
one YAML document and installed into a tenant in dependency order. The
specs build the same runtime dataclasses that code-first authors use.

Usage::

    from procspine.definitions import DefinitionsSpec

    spec = DefinitionsSpec.from_yaml_file("definitions/verify.yaml")
    installed = spec.install("t1", engine)

Example YAML::

    apiVersion: procspine.io/v1
    kind: Definitions
    spec:
      entity_types:
        - name: Person
          fields:
            - {name: email, type: string, required: true,
               validator: {kind: email}}
            - {name: status, type: string}
      queries:
        - {id: email_q, from: Entity, get_field: email}
      conditions:
        - {kind: single, id: email_ok, query_id: email_q,
           operator: EQ, value: a@x.com}
      processes:
        - name: Verify
          steps:
            - {kind: condition, id: check, condition_id: email_ok}
            - {kind: action, id: mark, type: FieldUpdate,
               params: {field: status, value: verified}}

Manifesto:
    Definitions are data. Authors should be able to keep schemas,
    conditions and processes in version control and load them without
    writing Python, while both paths produce identical objects.

Tags:
    procspine, definitions, yaml, declarative, pydantic
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Any, Literal, TypeVar, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from procspine.conditions.catalog import leaf_pattern_violations
from procspine.conditions.models import (
    AndCondition,
    ConditionNode,
    NotCondition,
    OrCondition,
    QueryDef,
    SingleCondition,
    SourceKind,
    iter_leaves,
)
from procspine.core.errors import NotFoundError, ValidationError, Violation
from procspine.core.logging import get_logger
from procspine.core.timestamps import new_id
from procspine.core.values import Value
from procspine.entities.models import EntityID
from procspine.process.engine import ProcessEngine
from procspine.process.models import (
    ActionType,
    ProcActionDef,
    ProcConditionDef,
    ProcessDef,
    ProcStepDef,
    fresh_copy,
)
from procspine.schema.fields import EntityTypeDef, FieldDef, FieldType
from procspine.schema.validators import ValidatorKind, ValidatorSpec

logger = get_logger(__name__)

T = TypeVar("T")

API_VERSION = "procspine.io/v1"


# =============================================================================
# SCHEMA
# =============================================================================


class ValidatorModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: ValidatorKind
    params: dict[str, Any] = Field(default_factory=dict)

    def to_validator(self) -> ValidatorSpec:
        return ValidatorSpec(kind=self.kind, params=dict(self.params))


class FieldSpec(BaseModel):
    """One field of an entity type or process."""

    model_config = ConfigDict(extra="forbid")

    id: str | None = Field(default=None, description="Stable id (generated if omitted)")
    name: str = Field(..., min_length=1)
    type: FieldType
    required: bool = False
    description: str = ""
    validator: ValidatorModel | None = None

    def to_field(self) -> FieldDef:
        return FieldDef(
            id=self.id or new_id(),
            name=self.name,
            type=self.type,
            is_required=self.required,
            description=self.description,
            validator=self.validator.to_validator() if self.validator else None,
        )


def _unique_field_names(fields: list[FieldSpec]) -> list[FieldSpec]:
    names = [f.name for f in fields]
    if len(names) != len(set(names)):
        duplicates = {n for n in names if names.count(n) > 1}
        raise ValueError(f"Duplicate field names: {duplicates}")
    return fields


class EntityTypeSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1)
    fields: list[FieldSpec] = Field(default_factory=list)

    @field_validator("fields")
    @classmethod
    def validate_unique_field_names(cls, v: list[FieldSpec]) -> list[FieldSpec]:
        return _unique_field_names(v)


# =============================================================================
# QUERIES AND CONDITIONS
# =============================================================================


class EntityIDSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type_id: str
    id: str

    def to_entity_id(self) -> EntityID:
        return EntityID(type_id=self.type_id, id=self.id)


class QuerySpec(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: str = Field(..., min_length=1)
    source: SourceKind = Field(..., alias="from")
    get_field: str = Field(..., min_length=1)
    where_created_by: EntityIDSpec | None = None

    def to_query(self) -> QueryDef:
        return QueryDef(
            id=self.id,
            source=self.source,
            get_field=self.get_field,
            where_created_by=self.where_created_by.to_entity_id() if self.where_created_by else None,
        )


class SingleConditionSpec(BaseModel):
    """Leaf. ``operator`` is a plain string; unknown names fail at evaluation."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["single"] = "single"
    id: str | None = None
    query_id: str
    operator: str
    value: Any = None

    def to_condition(self) -> ConditionNode:
        return SingleCondition(
            id=self.id or new_id(),
            query_id=self.query_id,
            operator=self.operator,
            value=Value.of(self.value),
        )


class AndConditionSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["and"] = "and"
    id: str | None = None
    left: ConditionSpec
    right: ConditionSpec

    def to_condition(self) -> ConditionNode:
        return AndCondition(
            id=self.id or new_id(),
            left=self.left.to_condition(),
            right=self.right.to_condition(),
        )


class OrConditionSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["or"] = "or"
    id: str | None = None
    left: ConditionSpec
    right: ConditionSpec

    def to_condition(self) -> ConditionNode:
        return OrCondition(
            id=self.id or new_id(),
            left=self.left.to_condition(),
            right=self.right.to_condition(),
        )


class NotConditionSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["not"] = "not"
    id: str | None = None
    child: ConditionSpec

    def to_condition(self) -> ConditionNode:
        return NotCondition(id=self.id or new_id(), child=self.child.to_condition())


ConditionSpec = Annotated[
    Union[SingleConditionSpec, AndConditionSpec, OrConditionSpec, NotConditionSpec],
    Field(discriminator="kind"),
]

AndConditionSpec.model_rebuild()
OrConditionSpec.model_rebuild()
NotConditionSpec.model_rebuild()


# =============================================================================
# PROCESSES
# =============================================================================


class ConditionStepSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["condition"] = "condition"
    id: str | None = None
    condition_id: str = Field(..., min_length=1)

    def to_step(self) -> ProcStepDef:
        return ProcConditionDef(id=self.id or new_id(), condition_id=self.condition_id)


class ActionStepSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["action"] = "action"
    id: str | None = None
    type: ActionType = ActionType.NONE
    params: dict[str, Any] = Field(default_factory=dict)

    def to_step(self) -> ProcStepDef:
        return ProcActionDef(id=self.id or new_id(), type=self.type, action_params=dict(self.params))


StepSpec = Annotated[Union[ConditionStepSpec, ActionStepSpec], Field(discriminator="kind")]


class ProcessSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1)
    fields: list[FieldSpec] = Field(default_factory=list)
    steps: list[StepSpec] = Field(default_factory=list)

    @field_validator("fields")
    @classmethod
    def validate_unique_field_names(cls, v: list[FieldSpec]) -> list[FieldSpec]:
        return _unique_field_names(v)

    @field_validator("steps")
    @classmethod
    def validate_unique_step_ids(cls, v: list[ConditionStepSpec | ActionStepSpec]) -> list:
        ids = [s.id for s in v if s.id]
        if len(ids) != len(set(ids)):
            duplicates = {i for i in ids if ids.count(i) > 1}
            raise ValueError(f"Duplicate step ids: {duplicates}")
        return v


# =============================================================================
# BUNDLE
# =============================================================================


class DefinitionsSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    entity_types: list[EntityTypeSpec] = Field(default_factory=list)
    queries: list[QuerySpec] = Field(default_factory=list)
    conditions: list[ConditionSpec] = Field(default_factory=list)
    processes: list[ProcessSpec] = Field(default_factory=list)


@dataclass
class InstalledDefinitions:
    """What :meth:`DefinitionsSpec.install` created."""

    entity_types: list[EntityTypeDef] = field(default_factory=list)
    queries: list[QueryDef] = field(default_factory=list)
    conditions: list[ConditionNode] = field(default_factory=list)
    processes: list[ProcessDef] = field(default_factory=list)


@dataclass
class _InstallPlan:
    entity_types: list[tuple[str, list[FieldDef]]] = field(default_factory=list)
    queries: list[QueryDef] = field(default_factory=list)
    conditions: list[ConditionNode] = field(default_factory=list)
    processes: list[tuple[str, list[FieldDef], list[ProcStepDef]]] = field(default_factory=list)


class DefinitionsSpec(BaseModel):
    """Root model of a definitions document."""

    model_config = ConfigDict(extra="forbid")

    apiVersion: Literal["procspine.io/v1"] = Field(default=API_VERSION)
    kind: Literal["Definitions"] = Field(default="Definitions")
    spec: DefinitionsSection = Field(default_factory=DefinitionsSection)

    def install(self, tenant_id: str, engine: ProcessEngine) -> InstalledDefinitions:
        """Create everything in *tenant_id*: types, queries, conditions, processes.

        The whole document is checked against the tenant first; a rejected
        document creates nothing.

        Raises:
            ValidationError: Every problem found in the document at once
        """
        plan = self._plan(tenant_id, engine)
        installed = InstalledDefinitions()
        for name, fields in plan.entity_types:
            installed.entity_types.append(engine.registry.create_type(tenant_id, name, fields))
        catalog = engine.conditions.catalog
        for query in plan.queries:
            installed.queries.append(catalog.register_query(tenant_id, query))
        for condition in plan.conditions:
            installed.conditions.append(catalog.register_condition(tenant_id, condition))
        for name, fields, steps in plan.processes:
            installed.processes.append(engine.define_process(tenant_id, name, fields=fields, steps=steps))
        logger.info(
            "definitions_installed",
            tenant_id=tenant_id,
            entity_types=len(installed.entity_types),
            queries=len(installed.queries),
            conditions=len(installed.conditions),
            processes=len(installed.processes),
        )
        return installed

    def _plan(self, tenant_id: str, engine: ProcessEngine) -> _InstallPlan:
        """Build every runtime object and check it against the tenant."""
        plan = _InstallPlan()
        violations: list[Violation] = []
        catalog = engine.conditions.catalog

        names = [t.name for t in self.spec.entity_types] + [p.name for p in self.spec.processes]
        for name in _duplicates(names):
            violations.append(Violation(name, "duplicate_name", f"type name {name!r} appears more than once"))
        for name in dict.fromkeys(names):
            if _type_name_taken(engine, tenant_id, name):
                violations.append(Violation(name, "duplicate_name", f"type name {name!r} is taken"))

        for type_spec in self.spec.entity_types:
            fields = _build_fields(type_spec.name, type_spec.fields, violations)
            _build(
                type_spec.name,
                lambda: EntityTypeDef(type_id=new_id(), tenant_id=tenant_id, name=type_spec.name, fields=tuple(fields)),
                violations,
            )
            plan.entity_types.append((type_spec.name, fields))

        for query_spec in self.spec.queries:
            query = _build(query_spec.id, query_spec.to_query, violations)
            if query is not None:
                plan.queries.append(query)
        query_ids = [q.id for q in plan.queries]
        for query_id in _duplicates(query_ids):
            violations.append(Violation(query_id, "duplicate_id", f"query id {query_id!r} appears more than once"))
        for query_id in dict.fromkeys(query_ids):
            if catalog.find_query(tenant_id, query_id) is not None:
                violations.append(Violation(query_id, "duplicate_id", f"query id {query_id!r} is taken"))

        known_queries = set(query_ids)
        for condition_spec in self.spec.conditions:
            condition = _build(condition_spec.id or "condition", condition_spec.to_condition, violations)
            if condition is None:
                continue
            plan.conditions.append(condition)
            violations += [
                Violation(leaf.id, "unknown_query", f"leaf {leaf.id!r} references unknown query {leaf.query_id!r}")
                for leaf in iter_leaves(condition)
                if leaf.query_id not in known_queries and catalog.find_query(tenant_id, leaf.query_id) is None
            ]
            violations += leaf_pattern_violations(condition)
        condition_ids = [c.id for c in plan.conditions]
        for condition_id in _duplicates(condition_ids):
            violations.append(
                Violation(condition_id, "duplicate_id", f"condition id {condition_id!r} appears more than once")
            )
        for condition_id in dict.fromkeys(condition_ids):
            if catalog.has_condition(tenant_id, condition_id):
                violations.append(Violation(condition_id, "duplicate_id", f"condition id {condition_id!r} is taken"))

        known_conditions = set(condition_ids)
        for process_spec in self.spec.processes:
            fields = _build_fields(process_spec.name, process_spec.fields, violations)
            steps = [
                step
                for step in (_build(s.id or process_spec.name, s.to_step, violations) for s in process_spec.steps)
                if step is not None
            ]
            violations += [
                Violation(s.id, "unknown_condition", f"step {s.id!r} references unknown condition {s.condition_id!r}")
                for s in steps
                if isinstance(s, ProcConditionDef)
                and s.condition_id not in known_conditions
                and not catalog.has_condition(tenant_id, s.condition_id)
            ]
            _build(
                process_spec.name,
                lambda: ProcessDef(
                    type_id=new_id(),
                    tenant_id=tenant_id,
                    name=process_spec.name,
                    fields=tuple(fields),
                    steps=tuple(fresh_copy(s) for s in steps),
                ),
                violations,
            )
            plan.processes.append((process_spec.name, fields, steps))

        if violations:
            raise ValidationError.from_violations(violations).with_context(tenant_id=tenant_id)
        return plan

    @classmethod
    def from_yaml(cls, yaml_content: str) -> DefinitionsSpec:
        """Parse and validate YAML content.

        Raises:
            ValueError: If the YAML is malformed or does not match the schema
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML: {e}") from e
        return cls.model_validate(data or {})

    @classmethod
    def from_yaml_file(cls, path: str | Path) -> DefinitionsSpec:
        return cls.from_yaml(Path(path).read_text(encoding="utf-8"))


def _build(location: str, build: Callable[[], T], violations: list[Violation]) -> T | None:
    """Run *build*, recording a ``ValueError`` as an ``invalid_definition`` violation."""
    try:
        return build()
    except ValueError as exc:
        violations.append(Violation(location, "invalid_definition", f"{location}: {exc}"))
        return None


def _build_fields(owner: str, specs: list[FieldSpec], violations: list[Violation]) -> list[FieldDef]:
    built = (_build(f"{owner}.{spec.name}", spec.to_field, violations) for spec in specs)
    return [f for f in built if f is not None]


def _duplicates(values: list[str]) -> list[str]:
    seen: set[str] = set()
    repeated: list[str] = []
    for value in values:
        if value in seen and value not in repeated:
            repeated.append(value)
        seen.add(value)
    return repeated


def _type_name_taken(engine: ProcessEngine, tenant_id: str, name: str) -> bool:
    try:
        engine.registry.get_type_by_name(tenant_id, name)
    except NotFoundError:
        return False
    return True


__all__ = [
    "API_VERSION",
    "ValidatorModel",
    "FieldSpec",
    "EntityTypeSpec",
    "EntityIDSpec",
    "QuerySpec",
    "SingleConditionSpec",
    "AndConditionSpec",
    "OrConditionSpec",
    "NotConditionSpec",
    "ConditionSpec",
    "ConditionStepSpec",
    "ActionStepSpec",
    "StepSpec",
    "ProcessSpec",
    "DefinitionsSection",
    "DefinitionsSpec",
    "InstalledDefinitions",
]
