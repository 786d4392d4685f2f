"""Operator semantics for leaf conditions.

``subject`` is the value a query resolved to; ``operand`` is the literal
stored on the leaf. Every operator is total over the Value kinds: it
either returns a bool or raises ``TypeMismatchError``.
"""

from __future__ import annotations

import re
from functools import lru_cache

from procspine.conditions.models import Operator
from procspine.core.errors import TypeMismatchError
from procspine.core.values import Value, ValueKind

_ORDERED_KINDS = (ValueKind.NUMBER, ValueKind.DATE)


def apply_operator(operator: Operator, subject: Value, operand: Value) -> bool:
    """Compare *subject* against *operand*."""
    match operator:
        case Operator.EQ:
            return subject == operand
        case Operator.NE:
            return subject != operand
        case Operator.GT | Operator.GTE | Operator.LT | Operator.LTE:
            return _compare_ordered(operator, subject, operand)
        case Operator.IN:
            if operand.kind is not ValueKind.ARRAY:
                raise TypeMismatchError(operator.value, f"right-hand side must be an array, got {operand.kind.value}")
            return subject in operand.data
        case Operator.CONTAINS:
            return _contains(subject, operand)
        case Operator.MATCHES:
            return _matches(subject, operand)
    raise AssertionError(f"unhandled operator {operator!r}")


def _compare_ordered(operator: Operator, subject: Value, operand: Value) -> bool:
    if subject.kind not in _ORDERED_KINDS or subject.kind is not operand.kind:
        raise TypeMismatchError(
            operator.value,
            f"cannot order {subject.kind.value} against {operand.kind.value}",
        )
    left, right = subject.data, operand.data
    match operator:
        case Operator.GT:
            return left > right
        case Operator.GTE:
            return left >= right
        case Operator.LT:
            return left < right
        case _:
            return left <= right


def _contains(subject: Value, operand: Value) -> bool:
    match subject.kind:
        case ValueKind.ARRAY:
            return operand in subject.data
        case ValueKind.STRING:
            if operand.kind is not ValueKind.STRING:
                raise TypeMismatchError("CONTAINS", f"substring must be a string, got {operand.kind.value}")
            return operand.data in subject.data
    raise TypeMismatchError("CONTAINS", f"left-hand side must be an array or string, got {subject.kind.value}")


def _matches(subject: Value, operand: Value) -> bool:
    if subject.kind is not ValueKind.STRING or operand.kind is not ValueKind.STRING:
        raise TypeMismatchError(
            "MATCHES",
            f"pattern test needs string subject and pattern, got {subject.kind.value} and {operand.kind.value}",
        )
    return _compile(operand.data).search(subject.data) is not None


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise TypeMismatchError("MATCHES", f"invalid pattern {pattern!r}: {exc}") from exc


def pattern_problem(operand: Value) -> str | None:
    """Why *operand* cannot be used as a MATCHES pattern, or ``None`` if it can."""
    if operand.kind is not ValueKind.STRING:
        return f"pattern must be a string, got {operand.kind.value}"
    try:
        _compile(operand.data)
    except TypeMismatchError as exc:
        return exc.message
    return None


__all__ = ["apply_operator", "pattern_problem"]
