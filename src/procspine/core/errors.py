"""
Structured error types for procspine.

Provides the typed error hierarchy shared by the schema registry, the entity
store, the condition engine and the process engine. Every error carries the
metadata needed to decide whether the caller may retry, and enough context to
log the failure without re-deriving it.

Manifesto:
    - **Typed Error Hierarchy:** One error kind per failure mode, never a bare Exception
    - **Explicit Retry Semantics:** Each error knows if the caller may retry
    - **Complete Reports:** Validation failures carry every violation, not the first one
    - **Error Chaining:** Preserve original exceptions while adding context

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                      ProcSpineError                              │
        │  (category, retryable, context, cause)                           │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  ValidationError      NotFoundError       ConflictError          │
        │  (VALIDATION)         (NOT_FOUND)         (CONCURRENCY, retry)   │
        │                                                                  │
        │  EvaluationError                          ActionExecutionError   │
        │  (EVALUATION)                             (ACTION, retry)        │
        │       │                                                          │
        │  UnresolvedReferenceError                                        │
        │  TypeMismatchError                                               │
        │  UnsupportedOperatorError (DEFINITION, fatal)                    │
        │                                                                  │
        │  ProcessError (PROCESS)                                          │
        │       │                                                          │
        │  InvalidTransitionError  StepFailedError  EventAbortedError      │
        └─────────────────────────────────────────────────────────────────┘

Examples:
    Aggregating validation violations:

    >>> err = ValidationError.from_violations([
    ...     Violation("f1", "missing_required", "email is required"),
    ...     Violation("f2", "type_mismatch", "age expects number"),
    ... ])
    >>> len(err.violations)
    2
    >>> err.retryable
    False

    Optimistic concurrency conflicts are retryable:

    >>> ConflictError("entity", "e-1", expected=3, actual=4).retryable
    True

Guardrails:
    ❌ DON'T: Swallow an evaluation error as ``False``
    ✅ DO: Let it propagate; the process engine records it as a failed attempt

    ❌ DON'T: Retry UnsupportedOperatorError
    ✅ DO: Fix the definition

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context,
    procspine-core
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Standard error categories for classification and routing.

    Attributes:
        VALIDATION: Schema violations on entity/event field values
        NOT_FOUND: Unknown type, field, entity, process, event or definition id
        CONCURRENCY: Optimistic concurrency or in-flight mutation conflicts
        EVALUATION: Condition evaluation could not resolve or compare a value
        DEFINITION: A stored definition is malformed
        ACTION: An action side effect failed
        PROCESS: Process instance state machine errors
        CONFIG: Missing or invalid settings
        INTERNAL: Bugs, unexpected state
    """

    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    CONCURRENCY = "CONCURRENCY"
    EVALUATION = "EVALUATION"
    DEFINITION = "DEFINITION"
    ACTION = "ACTION"
    PROCESS = "PROCESS"
    CONFIG = "CONFIG"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """
    Structured metadata context for errors.

    Only non-None fields are serialized by ``to_dict()``; anything that does
    not have a dedicated slot goes into ``metadata``.

    Attributes:
        tenant_id: Tenant the failing operation was scoped to
        type_id: Entity type or process definition id
        entity_id: Entity record id
        event_id: Process instance id
        step_index: Index of the process step being attempted
        metadata: Additional key-value pairs
    """

    tenant_id: str | None = None
    type_id: str | None = None
    entity_id: str | None = None
    event_id: str | None = None
    step_index: int | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["tenant_id", "type_id", "entity_id", "event_id", "step_index"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class ProcSpineError(Exception):
    """
    Base exception for all procspine errors.

    Subclasses set ``default_category`` and ``default_retryable`` so that
    callers (and the process engine) can make retry decisions without
    inspecting messages.

    Examples:
        >>> error = ProcSpineError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.with_context(tenant_id="t1").context.tenant_id
        't1'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ProcSpineError:
        """
        Add context to this error (fluent API).

        Usage:
            raise NotFoundError("entity", entity_id).with_context(tenant_id=tenant_id)
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# VALIDATION ERRORS
# =============================================================================


@dataclass(frozen=True)
class Violation:
    """One schema violation found while validating a field set.

    ``code`` is one of ``unknown_field``, ``type_mismatch``,
    ``missing_required``, ``validator_failed`` or ``removed_field``.
    """

    field_id: str
    code: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"field_id": self.field_id, "code": self.code, "message": self.message}


class ValidationError(ProcSpineError):
    """
    Field values do not satisfy the owning type's schema.

    Never retryable - the values must be fixed. Carries the complete list of
    violations so callers see every problem in one round trip.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        violations: list[Violation] | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.violations: list[Violation] = list(violations or [])

    @classmethod
    def from_violations(cls, violations: list[Violation], **kwargs: Any) -> ValidationError:
        summary = "; ".join(v.message for v in violations)
        return cls(
            f"{len(violations)} validation error(s): {summary}",
            violations=violations,
            **kwargs,
        )

    @property
    def codes(self) -> set[str]:
        return {v.code for v in self.violations}

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["violations"] = [v.to_dict() for v in self.violations]
        return result


# =============================================================================
# LOOKUP / CONCURRENCY ERRORS
# =============================================================================


class NotFoundError(ProcSpineError):
    """Unknown type, field, entity, process, event or definition id."""

    default_category = ErrorCategory.NOT_FOUND
    default_retryable = False

    def __init__(self, kind: str, key: str, message: str | None = None, **kwargs: Any):
        self.kind = kind
        self.key = key
        super().__init__(message or f"{kind} not found: {key}", **kwargs)


class ConflictError(ProcSpineError):
    """
    Optimistic concurrency violation.

    The caller must re-read the current state and retry with the fresh
    revision marker.
    """

    default_category = ErrorCategory.CONCURRENCY
    default_retryable = True

    def __init__(
        self,
        kind: str,
        key: str,
        *,
        expected: int | None = None,
        actual: int | None = None,
        message: str | None = None,
        **kwargs: Any,
    ):
        self.kind = kind
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            message or f"{kind} {key} changed concurrently (expected revision {expected}, found {actual})",
            **kwargs,
        )


# =============================================================================
# CONDITION EVALUATION ERRORS
# =============================================================================


class EvaluationError(ProcSpineError):
    """Base for failures while evaluating a condition tree."""

    default_category = ErrorCategory.EVALUATION
    default_retryable = False


class UnresolvedReferenceError(EvaluationError):
    """A query's source or field cannot be resolved in the evaluation scope."""

    def __init__(self, reference: str, reason: str, **kwargs: Any):
        self.reference = reference
        self.reason = reason
        super().__init__(f"Unresolved reference {reference!r}: {reason}", **kwargs)


class TypeMismatchError(EvaluationError):
    """Operands cannot be compared with the requested operator."""

    def __init__(self, operator: str, message: str, **kwargs: Any):
        self.operator = operator
        super().__init__(f"{operator}: {message}", **kwargs)


class UnsupportedOperatorError(EvaluationError):
    """
    The condition definition names an operator outside the fixed set.

    Fatal to the definition; re-checking will never succeed.
    """

    default_category = ErrorCategory.DEFINITION

    def __init__(self, operator: Any, **kwargs: Any):
        self.operator = operator
        super().__init__(f"Unsupported operator: {operator!r}", **kwargs)


# =============================================================================
# PROCESS ERRORS
# =============================================================================


class ActionExecutionError(ProcSpineError):
    """An action side effect failed. Retried up to policy, then terminal."""

    default_category = ErrorCategory.ACTION
    default_retryable = True


class ProcessError(ProcSpineError):
    """Process instance state machine error."""

    default_category = ErrorCategory.PROCESS
    default_retryable = False


class InvalidTransitionError(ProcessError):
    """Raised when an illegal step or instance state transition is attempted."""

    def __init__(self, current: str, target: str, enum_name: str = "Status", **kwargs: Any):
        self.current = current
        self.target = target
        super().__init__(f"Invalid {enum_name} transition: {current} → {target}", **kwargs)


class StepFailedError(ProcessError):
    """The current step is terminally failed and needs manual intervention."""

    def __init__(self, event_id: str, step_index: int, **kwargs: Any):
        self.event_id = event_id
        self.step_index = step_index
        super().__init__(
            f"Event {event_id} is blocked on failed step {step_index}",
            **kwargs,
        )


class EventAbortedError(ProcessError):
    """The event instance was aborted and cannot advance."""

    def __init__(self, event_id: str, **kwargs: Any):
        self.event_id = event_id
        super().__init__(f"Event {event_id} has been aborted", **kwargs)


class ConfigError(ProcSpineError):
    """Configuration error. Never retryable."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, ProcSpineError):
        return error.retryable
    return False


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "ProcSpineError",
    "Violation",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "EvaluationError",
    "UnresolvedReferenceError",
    "TypeMismatchError",
    "UnsupportedOperatorError",
    "ActionExecutionError",
    "ProcessError",
    "InvalidTransitionError",
    "StepFailedError",
    "EventAbortedError",
    "ConfigError",
    "is_retryable",
]
