"""Schema layer — entity type definitions, validators and the registry."""

from procspine.schema.fields import EntityTypeDef, FieldDef, FieldType
from procspine.schema.registry import SchemaRegistry
from procspine.schema.validators import ValidatorKind, ValidatorSpec

__all__ = [
    "EntityTypeDef",
    "FieldDef",
    "FieldType",
    "SchemaRegistry",
    "ValidatorKind",
    "ValidatorSpec",
]
