"""
procspine - multi-tenant schemas, conditions and long-running processes.

Sub-packages, leaves first:

- procspine.core: values, errors, logging, settings, locks, timestamps
- procspine.schema: entity type definitions and the Schema Registry
- procspine.entities: schema-validated records with optimistic concurrency
- procspine.conditions: queries, condition trees and their evaluation
- procspine.process: process definitions, event instances, engine and worker
- procspine.definitions: declarative (dict / YAML) authoring
"""

__version__ = "0.1.0"

from procspine.conditions import ConditionCatalog, ConditionEngine, EvaluationScope
from procspine.core.errors import (
    ConflictError,
    NotFoundError,
    ProcSpineError,
    UnresolvedReferenceError,
    ValidationError,
)
from procspine.core.values import Value, ValueKind
from procspine.entities import EntityID, EntityRecord, EntityStore
from procspine.process import ProcessEngine, ProcessWorker
from procspine.schema import EntityTypeDef, FieldDef, FieldType, SchemaRegistry

__all__ = [
    "__version__",
    "Value",
    "ValueKind",
    "ProcSpineError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "UnresolvedReferenceError",
    "SchemaRegistry",
    "EntityTypeDef",
    "FieldDef",
    "FieldType",
    "EntityID",
    "EntityRecord",
    "EntityStore",
    "ConditionCatalog",
    "ConditionEngine",
    "EvaluationScope",
    "ProcessEngine",
    "ProcessWorker",
]
