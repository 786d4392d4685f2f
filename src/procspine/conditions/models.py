"""
Condition definitions — queries, operators and the condition tree.

A condition tree is a closed sum type over four node kinds. The engine
dispatches on the node class with ``match``; nodes carry no behaviour of
their own, so adding a kind means touching exactly one ``match`` block.

Architecture:
    ::

        QueryDef(id, source, get_field, where_created_by?)
            "from a record of kind <source> (optionally created by X),
             project field <get_field>"

        ConditionNode = SingleCondition            leaf: query <op> literal
                      | AndCondition(left, right)  short-circuit
                      | OrCondition(left, right)   short-circuit
                      | NotCondition(child)

        Operator: EQ NE GT GTE LT LTE IN CONTAINS MATCHES

Serialization:
    Every node has ``to_dict()``; :func:`condition_from_dict` rebuilds a
    tree from the ``kind``-tagged form. Operator names are not validated
    on load: a stored definition with an unknown operator still loads and
    fails with ``UnsupportedOperatorError`` when it is evaluated.

Examples:
    >>> q = QueryDef(id="email_q", source=SourceKind.ENTITY, get_field="email")
    >>> leaf = SingleCondition(id="c1", query_id="email_q",
    ...                        operator=Operator.EQ, value=Value.of("a@x.com"))
    >>> tree = NotCondition(child=leaf)
    >>> condition_from_dict(tree.to_dict()) == tree
    True

Tags:
    conditions, sum-type, query, procspine
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from procspine.core.errors import UnsupportedOperatorError
from procspine.core.timestamps import new_id
from procspine.core.values import Value
from procspine.entities.models import EntityID


class SourceKind(str, Enum):
    """Kind of record a query reads from."""

    ENTITY = "Entity"
    EVENT = "Event"
    DOCUMENT = "Document"


class Operator(str, Enum):
    """The fixed set of leaf comparison operators."""

    EQ = "EQ"
    NE = "NE"
    GT = "GT"
    GTE = "GTE"
    LT = "LT"
    LTE = "LTE"
    IN = "IN"
    CONTAINS = "CONTAINS"
    MATCHES = "MATCHES"

    @classmethod
    def parse(cls, raw: Operator | str) -> Operator:
        """Return the operator named *raw*.

        Raises:
            UnsupportedOperatorError: For anything outside the fixed set
        """
        if isinstance(raw, Operator):
            return raw
        try:
            return cls(raw)
        except ValueError:
            raise UnsupportedOperatorError(raw) from None


@dataclass(frozen=True)
class QueryDef:
    """A named extraction rule resolved against the evaluation scope."""

    id: str
    source: SourceKind
    get_field: str
    where_created_by: EntityID | None = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("QueryDef.id must be non-empty.")
        if not self.get_field:
            raise ValueError("QueryDef.get_field must be non-empty.")
        if not isinstance(self.source, SourceKind):
            object.__setattr__(self, "source", SourceKind(self.source))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "from": self.source.value,
            "get_field": self.get_field,
            "where_created_by": self.where_created_by.to_dict() if self.where_created_by else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueryDef:
        creator = data.get("where_created_by")
        return cls(
            id=data["id"],
            source=SourceKind(data["from"]),
            get_field=data["get_field"],
            where_created_by=EntityID.from_dict(creator) if creator else None,
        )


# =============================================================================
# CONDITION TREE
# =============================================================================


@dataclass(frozen=True)
class SingleCondition:
    """Leaf predicate: ``resolve(query_id) <operator> value``.

    ``operator`` is kept as given when it is not a known name so that a
    malformed stored definition surfaces at evaluation time.
    """

    query_id: str
    operator: Operator | str
    value: Value = field(default_factory=Value.null)
    id: str = field(default_factory=new_id)

    __hash__ = None

    def __post_init__(self):
        if not isinstance(self.value, Value):
            object.__setattr__(self, "value", Value.of(self.value))
        if not isinstance(self.operator, Operator) and self.operator in Operator._value2member_map_:
            object.__setattr__(self, "operator", Operator(self.operator))

    def to_dict(self) -> dict[str, Any]:
        op = self.operator.value if isinstance(self.operator, Operator) else self.operator
        return {
            "kind": "single",
            "id": self.id,
            "query_id": self.query_id,
            "operator": op,
            "value": self.value.to_wire(),
        }


@dataclass(frozen=True)
class AndCondition:
    left: ConditionNode
    right: ConditionNode
    id: str = field(default_factory=new_id)

    __hash__ = None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": "and", "id": self.id, "left": self.left.to_dict(), "right": self.right.to_dict()}


@dataclass(frozen=True)
class OrCondition:
    left: ConditionNode
    right: ConditionNode
    id: str = field(default_factory=new_id)

    __hash__ = None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": "or", "id": self.id, "left": self.left.to_dict(), "right": self.right.to_dict()}


@dataclass(frozen=True)
class NotCondition:
    child: ConditionNode
    id: str = field(default_factory=new_id)

    __hash__ = None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": "not", "id": self.id, "child": self.child.to_dict()}


ConditionNode = SingleCondition | AndCondition | OrCondition | NotCondition


def condition_from_dict(data: dict[str, Any]) -> ConditionNode:
    """Rebuild a condition tree from its ``kind``-tagged dict form."""
    kind = data.get("kind")
    match kind:
        case "single":
            return SingleCondition(
                id=data["id"],
                query_id=data["query_id"],
                operator=data["operator"],
                value=Value.of(data.get("value")),
            )
        case "and":
            return AndCondition(
                id=data["id"],
                left=condition_from_dict(data["left"]),
                right=condition_from_dict(data["right"]),
            )
        case "or":
            return OrCondition(
                id=data["id"],
                left=condition_from_dict(data["left"]),
                right=condition_from_dict(data["right"]),
            )
        case "not":
            return NotCondition(id=data["id"], child=condition_from_dict(data["child"]))
    raise ValueError(f"Unknown condition kind: {kind!r}")


def iter_leaves(node: ConditionNode):
    """Yield every leaf of a tree, left to right."""
    match node:
        case SingleCondition():
            yield node
        case AndCondition(left=left, right=right) | OrCondition(left=left, right=right):
            yield from iter_leaves(left)
            yield from iter_leaves(right)
        case NotCondition(child=child):
            yield from iter_leaves(child)


__all__ = [
    "SourceKind",
    "Operator",
    "QueryDef",
    "SingleCondition",
    "AndCondition",
    "OrCondition",
    "NotCondition",
    "ConditionNode",
    "condition_from_dict",
    "iter_leaves",
]
