"""
Condition layer — queries, condition trees and their evaluation.

::

    QueryDef ──┐
               ├── ConditionCatalog (tenant, id) ──► ConditionEngine.evaluate(node, scope)
    ConditionNode                                        │
      Single | And | Or | Not                            ├─ Entity   → EntityStore
                                                         ├─ Event    → EventView
                                                         └─ Document → DocumentLookup
"""

from procspine.conditions.catalog import ConditionCatalog
from procspine.conditions.engine import ConditionEngine
from procspine.conditions.models import (
    AndCondition,
    ConditionNode,
    NotCondition,
    Operator,
    OrCondition,
    QueryDef,
    SingleCondition,
    SourceKind,
)
from procspine.conditions.sources import (
    DocumentDesc,
    DocumentLookup,
    EvaluationScope,
    EventView,
    InMemoryDocumentLookup,
)

__all__ = [
    "ConditionCatalog",
    "ConditionEngine",
    "AndCondition",
    "ConditionNode",
    "NotCondition",
    "Operator",
    "OrCondition",
    "QueryDef",
    "SingleCondition",
    "SourceKind",
    "DocumentDesc",
    "DocumentLookup",
    "EvaluationScope",
    "EventView",
    "InMemoryDocumentLookup",
]
