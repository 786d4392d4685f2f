"""
Scalar value model — the tagged value type shared by every layer.

Entity fields, event fields, document metadata, condition operands and
action parameters all hold a :class:`Value`. A value is a closed variant
over seven kinds; the kind travels with the data so that a date is never
mistaken for a string and a boolean is never mistaken for a number.

Architecture:
    ::

        Value(kind, data)
          NULL     → None
          BOOLEAN  → bool
          NUMBER   → int | float          (bool is NOT a number)
          STRING   → str
          DATE     → datetime (tz-aware)  wire: {"$date": "<ISO-8601>"}
          OBJECT   → dict[str, Value]
          ARRAY    → tuple[Value, ...]

Wire format:
    ``to_wire()`` emits JSON-compatible data. Dates are the only kind that
    needs a tag; everything else maps onto plain JSON. ``Value.of()``
    accepts both wire data and native Python objects (``datetime``).

Examples:
    >>> v = Value.of({"$date": "2025-01-09T00:00:00Z"})
    >>> v.kind
    <ValueKind.DATE: 'date'>
    >>> v.to_wire()
    {'$date': '2025-01-09T00:00:00+00:00'}
    >>> Value.of("2025-01-09").kind
    <ValueKind.STRING: 'string'>
    >>> Value.of(True) == Value.of(1)
    False

Tags:
    value-model, tagged-union, serialization, procspine-core
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from procspine.core.timestamps import from_iso8601

DATE_TAG = "$date"


class ValueKind(str, Enum):
    """Runtime kind of a :class:`Value`."""

    NULL = "null"
    BOOLEAN = "boolean"
    NUMBER = "number"
    STRING = "string"
    DATE = "date"
    OBJECT = "object"
    ARRAY = "array"


@dataclass(frozen=True, eq=True)
class Value:
    """An immutable tagged scalar/structured value.

    Build values with :meth:`of` or the per-kind constructors rather than
    calling the dataclass directly; the constructors normalize the payload.
    """

    kind: ValueKind
    data: Any = None

    __hash__ = None  # OBJECT payloads are dicts

    # =========================================================================
    # Constructors
    # =========================================================================

    @classmethod
    def null(cls) -> Value:
        return cls(ValueKind.NULL, None)

    @classmethod
    def boolean(cls, value: bool) -> Value:
        if not isinstance(value, bool):
            raise TypeError(f"boolean value expected, got {type(value).__name__}")
        return cls(ValueKind.BOOLEAN, value)

    @classmethod
    def number(cls, value: int | float | Decimal) -> Value:
        if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
            raise TypeError(f"number value expected, got {type(value).__name__}")
        if isinstance(value, Decimal):
            value = int(value) if value == value.to_integral_value() else float(value)
        if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            raise ValueError("number value must be finite")
        return cls(ValueKind.NUMBER, value)

    @classmethod
    def string(cls, value: str) -> Value:
        if not isinstance(value, str):
            raise TypeError(f"string value expected, got {type(value).__name__}")
        return cls(ValueKind.STRING, value)

    @classmethod
    def date(cls, value: datetime | date | str) -> Value:
        if isinstance(value, str):
            value = from_iso8601(value)
        elif isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=UTC)
        elif isinstance(value, date):
            value = datetime(value.year, value.month, value.day, tzinfo=UTC)
        else:
            raise TypeError(f"date value expected, got {type(value).__name__}")
        return cls(ValueKind.DATE, value)

    @classmethod
    def object(cls, mapping: dict[str, Any]) -> Value:
        return cls(ValueKind.OBJECT, {str(k): cls.of(v) for k, v in mapping.items()})

    @classmethod
    def array(cls, items: list[Any] | tuple[Any, ...]) -> Value:
        return cls(ValueKind.ARRAY, tuple(cls.of(item) for item in items))

    @classmethod
    def of(cls, obj: Any) -> Value:
        """Build a value from wire data or a native Python object."""
        if isinstance(obj, Value):
            return obj
        if obj is None:
            return cls.null()
        if isinstance(obj, bool):
            return cls.boolean(obj)
        if isinstance(obj, (int, float, Decimal)):
            return cls.number(obj)
        if isinstance(obj, str):
            return cls.string(obj)
        if isinstance(obj, (datetime, date)):
            return cls.date(obj)
        if isinstance(obj, dict):
            if _is_date_tag(obj):
                return cls.date(obj[DATE_TAG])
            return cls.object(obj)
        if isinstance(obj, (list, tuple)):
            return cls.array(obj)
        raise TypeError(f"Cannot convert {type(obj).__name__} to Value")

    # =========================================================================
    # Accessors
    # =========================================================================

    @property
    def is_null(self) -> bool:
        return self.kind is ValueKind.NULL

    def to_wire(self) -> Any:
        """Serialize to JSON-compatible data, tagging dates."""
        match self.kind:
            case ValueKind.NULL | ValueKind.BOOLEAN | ValueKind.NUMBER | ValueKind.STRING:
                return self.data
            case ValueKind.DATE:
                return {DATE_TAG: self.data.isoformat()}
            case ValueKind.OBJECT:
                return {k: v.to_wire() for k, v in self.data.items()}
            case ValueKind.ARRAY:
                return [item.to_wire() for item in self.data]
        raise AssertionError(f"unhandled value kind {self.kind!r}")

    def to_python(self) -> Any:
        """Unwrap to native Python objects (dates become ``datetime``)."""
        match self.kind:
            case ValueKind.OBJECT:
                return {k: v.to_python() for k, v in self.data.items()}
            case ValueKind.ARRAY:
                return [item.to_python() for item in self.data]
            case _:
                return self.data

    def __repr__(self) -> str:
        return f"Value.{self.kind.value}({self.to_wire()!r})"


def _is_date_tag(obj: dict) -> bool:
    return len(obj) == 1 and DATE_TAG in obj and isinstance(obj[DATE_TAG], str)


__all__ = ["Value", "ValueKind", "DATE_TAG"]
