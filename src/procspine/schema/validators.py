"""Named, serializable field validators.

A field's validator is data, not code: a :class:`ValidatorSpec` names a
strategy (:class:`ValidatorKind`) plus its parameters, so schema
definitions can be persisted and transmitted. The strategies themselves
live in a registry keyed by kind.

Built-in strategies::

    REGEX      {"pattern": str}                  full match on strings
    RANGE      {"min": n|date, "max": n|date}    inclusive, numbers or dates
    LENGTH     {"min": int, "max": int}          strings and arrays
    ONE_OF     {"choices": [scalar, ...]}        membership by value equality
    EMAIL      {}                                local@domain.tld shape
    NOT_EMPTY  {}                                non-blank string / non-empty array/object

Example::

    spec = ValidatorSpec(ValidatorKind.RANGE, {"min": 0, "max": 130})
    spec.check(Value.number(200))   # -> "must be <= 130"
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from procspine.core.values import Value, ValueKind

# Returns None when the value is accepted, else a human-readable reason.
StrategyFn = Callable[[Value, dict[str, Any]], "str | None"]

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ValidatorKind(str, Enum):
    """Names of the registered validation strategies."""

    REGEX = "regex"
    RANGE = "range"
    LENGTH = "length"
    ONE_OF = "one_of"
    EMAIL = "email"
    NOT_EMPTY = "not_empty"


_STRATEGIES: dict[ValidatorKind, StrategyFn] = {}


def register_strategy(kind: ValidatorKind) -> Callable[[StrategyFn], StrategyFn]:
    """Decorator registering the check function for *kind*."""

    def decorator(fn: StrategyFn) -> StrategyFn:
        _STRATEGIES[kind] = fn
        return fn

    return decorator


def get_strategy(kind: ValidatorKind) -> StrategyFn:
    try:
        return _STRATEGIES[kind]
    except KeyError:
        raise ValueError(f"No strategy registered for validator {kind.value!r}") from None


@dataclass(frozen=True)
class ValidatorSpec:
    """A validator reference: strategy name plus parameters."""

    kind: ValidatorKind
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.kind, ValidatorKind):
            object.__setattr__(self, "kind", ValidatorKind(self.kind))
        if self.kind is ValidatorKind.REGEX:
            pattern = self.params.get("pattern")
            if not isinstance(pattern, str):
                raise ValueError("regex validator requires a 'pattern' string")
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"invalid regex pattern {pattern!r}: {exc}") from exc
        if self.kind is ValidatorKind.ONE_OF and not isinstance(self.params.get("choices"), list):
            raise ValueError("one_of validator requires a 'choices' list")

    def check(self, value: Value) -> str | None:
        """Run the strategy; returns None if accepted, else the failure reason."""
        return get_strategy(self.kind)(value, self.params)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "params": dict(self.params)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ValidatorSpec:
        return cls(kind=ValidatorKind(data["kind"]), params=dict(data.get("params") or {}))


# =============================================================================
# Built-in strategies
# =============================================================================


@register_strategy(ValidatorKind.REGEX)
def _check_regex(value: Value, params: dict[str, Any]) -> str | None:
    if value.kind is not ValueKind.STRING:
        return "regex validator applies to strings only"
    if re.fullmatch(params["pattern"], value.data) is None:
        return f"does not match pattern {params['pattern']!r}"
    return None


@register_strategy(ValidatorKind.RANGE)
def _check_range(value: Value, params: dict[str, Any]) -> str | None:
    if value.kind not in (ValueKind.NUMBER, ValueKind.DATE):
        return "range validator applies to numbers and dates only"
    low = params.get("min")
    high = params.get("max")
    if low is not None:
        bound = Value.of(low)
        if bound.kind is not value.kind:
            return f"range bound {low!r} is not comparable to a {value.kind.value}"
        if value.data < bound.data:
            return f"must be >= {low}"
    if high is not None:
        bound = Value.of(high)
        if bound.kind is not value.kind:
            return f"range bound {high!r} is not comparable to a {value.kind.value}"
        if value.data > bound.data:
            return f"must be <= {high}"
    return None


@register_strategy(ValidatorKind.LENGTH)
def _check_length(value: Value, params: dict[str, Any]) -> str | None:
    if value.kind not in (ValueKind.STRING, ValueKind.ARRAY):
        return "length validator applies to strings and arrays only"
    size = len(value.data)
    if params.get("min") is not None and size < params["min"]:
        return f"length must be >= {params['min']}"
    if params.get("max") is not None and size > params["max"]:
        return f"length must be <= {params['max']}"
    return None


@register_strategy(ValidatorKind.ONE_OF)
def _check_one_of(value: Value, params: dict[str, Any]) -> str | None:
    choices = [Value.of(choice) for choice in params["choices"]]
    if value not in choices:
        return f"must be one of {params['choices']!r}"
    return None


@register_strategy(ValidatorKind.EMAIL)
def _check_email(value: Value, params: dict[str, Any]) -> str | None:
    if value.kind is not ValueKind.STRING or _EMAIL_RE.match(value.data) is None:
        return "must be an email address"
    return None


@register_strategy(ValidatorKind.NOT_EMPTY)
def _check_not_empty(value: Value, params: dict[str, Any]) -> str | None:
    match value.kind:
        case ValueKind.STRING:
            empty = not value.data.strip()
        case ValueKind.ARRAY | ValueKind.OBJECT:
            empty = len(value.data) == 0
        case ValueKind.NULL:
            empty = True
        case _:
            empty = False
    return "must not be empty" if empty else None


__all__ = [
    "ValidatorKind",
    "ValidatorSpec",
    "register_strategy",
    "get_strategy",
]
