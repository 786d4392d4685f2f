"""
Process models — definitions, steps, attempts and event instances.

A :class:`ProcessDef` is an entity type extended with an ordered list of
steps. Each step is exactly one of two variants, a condition gate or an
action, so "both" and "neither" cannot be expressed. An :class:`EventRef`
is a running instance that owns private copies of the steps together
with their attempt history.

State machines:
    ::

        Step (condition):  PENDING → WAITING → SATISFIED
                                        │
                                        └→ FAILED  (broken definition)

        Step (action):     PENDING → SCHEDULED → RETRYING* → DONE
                                        │            │
                                        └────────────┴→ FAILED

        FAILED → WAITING | SCHEDULED   (manual retry_failed_step)

        Event:   RUNNING → COMPLETED
                    │  ↑
                    ▼  │ (retry_failed_step)
                  FAILED
                    │
        RUNNING/FAILED → ABORTED

Tags:
    process, workflow, state-machine, attempts, procspine
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from procspine.core.errors import InvalidTransitionError, NotFoundError
from procspine.core.timestamps import from_iso8601, to_iso8601, utc_now
from procspine.core.values import Value
from procspine.entities.models import EntityID
from procspine.schema.fields import EntityTypeDef, FieldDef


class ActionType(str, Enum):
    """Side effect performed by an action step."""

    EMAIL = "Email"
    FIELD_UPDATE = "FieldUpdate"
    NONE = "None"


class StepState(str, Enum):
    """Per-step sub-state of an event instance."""

    PENDING = "pending"
    WAITING = "waiting"
    SATISFIED = "satisfied"
    SCHEDULED = "scheduled"
    RETRYING = "retrying"
    DONE = "done"
    FAILED = "failed"


class EventStatus(str, Enum):
    """Lifecycle status of an event instance."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (EventStatus.COMPLETED, EventStatus.ABORTED)


STEP_VALID_TRANSITIONS: dict[StepState, frozenset[StepState]] = {
    StepState.PENDING: frozenset({StepState.WAITING, StepState.SCHEDULED}),
    StepState.WAITING: frozenset({StepState.SATISFIED, StepState.FAILED}),
    StepState.SCHEDULED: frozenset({StepState.RETRYING, StepState.DONE, StepState.FAILED}),
    StepState.RETRYING: frozenset({StepState.DONE, StepState.FAILED}),
    StepState.FAILED: frozenset({StepState.WAITING, StepState.SCHEDULED}),
    StepState.SATISFIED: frozenset(),
    StepState.DONE: frozenset(),
}

EVENT_VALID_TRANSITIONS: dict[EventStatus, frozenset[EventStatus]] = {
    EventStatus.RUNNING: frozenset({EventStatus.COMPLETED, EventStatus.FAILED, EventStatus.ABORTED}),
    EventStatus.FAILED: frozenset({EventStatus.RUNNING, EventStatus.ABORTED}),
    EventStatus.COMPLETED: frozenset(),
    EventStatus.ABORTED: frozenset(),
}


def validate_step_transition(current: StepState, target: StepState) -> None:
    """Raise InvalidTransitionError unless *current* → *target* is legal.

    Staying in the same non-terminal state (another failed attempt) is
    always allowed.
    """
    if current == target and STEP_VALID_TRANSITIONS[current]:
        return
    if target not in STEP_VALID_TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, target.value, "StepState")


def validate_event_transition(current: EventStatus, target: EventStatus) -> None:
    if target not in EVENT_VALID_TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, target.value, "EventStatus")


# =============================================================================
# ATTEMPTS AND STEPS
# =============================================================================


@dataclass(frozen=True)
class Attempt:
    """One recorded check or execution of a step."""

    at: datetime
    ok: bool
    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"at": to_iso8601(self.at), "ok": self.ok, "error": self.error, "error_type": self.error_type}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Attempt:
        return cls(
            at=from_iso8601(data["at"]),
            ok=bool(data["ok"]),
            error=data.get("error"),
            error_type=data.get("error_type"),
        )


@dataclass(frozen=True)
class _StepBase:
    id: str
    attempts: tuple[Attempt, ...] = ()
    state: StepState = StepState.PENDING
    removed: bool = False
    retry_from: int = 0

    @property
    def attempt_times(self) -> tuple[datetime, ...]:
        return tuple(a.at for a in self.attempts)

    @property
    def attempts_in_budget(self) -> int:
        """Attempts since the last manual retry."""
        return len(self.attempts) - self.retry_from

    @property
    def last_attempt(self) -> Attempt | None:
        return self.attempts[-1] if self.attempts else None

    def _base_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "attempts": [a.to_dict() for a in self.attempts],
            "state": self.state.value,
            "removed": self.removed,
            "retry_from": self.retry_from,
        }


@dataclass(frozen=True)
class ProcConditionDef(_StepBase):
    """A gate: the step is satisfied once its condition tree evaluates True."""

    condition_id: str = ""
    is_ok: bool | None = None

    def __post_init__(self):
        if not self.condition_id:
            raise ValueError(f"Condition step {self.id!r} needs a condition_id.")

    @property
    def is_complete(self) -> bool:
        return self.is_ok is True

    def to_dict(self) -> dict[str, Any]:
        return {"kind": "condition", **self._base_dict(), "condition_id": self.condition_id, "is_ok": self.is_ok}


@dataclass(frozen=True)
class ProcActionDef(_StepBase):
    """A side effect, retried up to the configured attempt budget."""

    type: ActionType = ActionType.NONE
    action_params: dict[str, Any] = field(default_factory=dict)
    is_done: bool = False

    __hash__ = None

    def __post_init__(self):
        if not isinstance(self.type, ActionType):
            object.__setattr__(self, "type", ActionType(self.type))

    @property
    def is_complete(self) -> bool:
        return self.is_done

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": "action",
            **self._base_dict(),
            "type": self.type.value,
            "action_params": dict(self.action_params),
            "is_done": self.is_done,
        }


ProcStepDef = ProcConditionDef | ProcActionDef


def step_from_dict(data: dict[str, Any]) -> ProcStepDef:
    common = {
        "id": data["id"],
        "attempts": tuple(Attempt.from_dict(a) for a in data.get("attempts", [])),
        "state": StepState(data.get("state", StepState.PENDING.value)),
        "removed": bool(data.get("removed", False)),
        "retry_from": int(data.get("retry_from", 0)),
    }
    match data.get("kind"):
        case "condition":
            return ProcConditionDef(**common, condition_id=data["condition_id"], is_ok=data.get("is_ok"))
        case "action":
            return ProcActionDef(
                **common,
                type=ActionType(data["type"]),
                action_params=dict(data.get("action_params") or {}),
                is_done=bool(data.get("is_done", False)),
            )
    raise ValueError(f"Unknown step kind: {data.get('kind')!r}")


def fresh_copy(step: ProcStepDef) -> ProcStepDef:
    """Instance-local copy of a template step with no history."""
    if isinstance(step, ProcConditionDef):
        return replace(step, attempts=(), state=StepState.PENDING, retry_from=0, is_ok=None)
    return replace(step, attempts=(), state=StepState.PENDING, retry_from=0, is_done=False)


def entry_state(step: ProcStepDef) -> StepState:
    """State a step takes when the cursor reaches it."""
    return StepState.WAITING if isinstance(step, ProcConditionDef) else StepState.SCHEDULED


# =============================================================================
# PROCESS DEFINITION
# =============================================================================


@dataclass(frozen=True)
class ProcessDef(EntityTypeDef):
    """An entity type whose instances are event runs through ``steps``.

    The inherited fields describe the values an event carries; ``steps``
    is the ordered template every new event copies.
    """

    steps: tuple[ProcStepDef, ...] = ()

    __hash__ = None

    def __post_init__(self):
        super().__post_init__()
        ids = [s.id for s in self.steps]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate step ids in process '{self.name}'.")
        for step in self.steps:
            if not isinstance(step, (ProcConditionDef, ProcActionDef)):
                raise ValueError(f"Step {step!r} is neither a condition nor an action.")

    @property
    def active_steps(self) -> tuple[ProcStepDef, ...]:
        return tuple(s for s in self.steps if not s.removed)

    def find_step(self, step_id: str) -> ProcStepDef | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def with_steps(self, steps: tuple[ProcStepDef, ...]) -> ProcessDef:
        return replace(self, steps=steps, version=self.version + 1)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["steps"] = [s.to_dict() for s in self.steps]
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProcessDef:
        return cls(
            type_id=data["type_id"],
            tenant_id=data["tenant_id"],
            name=data["name"],
            fields=tuple(FieldDef.from_dict(f) for f in data.get("fields", [])),
            version=int(data.get("version", 1)),
            created_at=from_iso8601(data.get("created_at")) or utc_now(),
            steps=tuple(step_from_dict(s) for s in data.get("steps", [])),
        )


# =============================================================================
# EVENT INSTANCE
# =============================================================================


@dataclass(frozen=True)
class EventRef:
    """
    A running instance of a :class:`ProcessDef`.

    Fields:
        id:              Event id
        tenant_id:       Owning tenant
        process_id:      Definition this event runs
        started_at:      Start timestamp
        started_by:      Who started it (matched by Event queries' creator filter)
        entities:        Bound entity ids, in binding order
        documents:       Bound document ids
        fields:          The event's own field values (process fields)
        steps:           Instance-local step copies with attempt history
        cursor:          Index of the current step
        status:          RUNNING / COMPLETED / FAILED / ABORTED
        revision:        Optimistic-concurrency marker of the stored row
        next_attempt_at: When the worker should attempt the current step
    """

    id: str
    tenant_id: str
    process_id: str
    started_at: datetime = field(default_factory=utc_now)
    started_by: EntityID | None = None
    entities: tuple[EntityID, ...] = ()
    documents: tuple[str, ...] = ()
    fields: dict[str, Value] = field(default_factory=dict)
    steps: tuple[ProcStepDef, ...] = ()
    cursor: int = 0
    status: EventStatus = EventStatus.RUNNING
    revision: int = 1
    process_version: int = 1
    next_attempt_at: datetime | None = None
    finished_at: datetime | None = None
    abort_reason: str | None = None

    __hash__ = None

    @property
    def current_step(self) -> ProcStepDef | None:
        if 0 <= self.cursor < len(self.steps):
            return self.steps[self.cursor]
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def step(self, step_id: str) -> ProcStepDef:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise NotFoundError("step", step_id).with_context(tenant_id=self.tenant_id, event_id=self.id)

    def with_step(self, index: int, step: ProcStepDef) -> EventRef:
        steps = list(self.steps)
        steps[index] = step
        return replace(self, steps=tuple(steps))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "process_id": self.process_id,
            "started_at": to_iso8601(self.started_at),
            "started_by": self.started_by.to_dict() if self.started_by else None,
            "entities": [e.to_dict() for e in self.entities],
            "documents": list(self.documents),
            "fields": [{"id": fid, "value": v.to_wire()} for fid, v in self.fields.items()],
            "steps": [s.to_dict() for s in self.steps],
            "cursor": self.cursor,
            "status": self.status.value,
            "revision": self.revision,
            "process_version": self.process_version,
            "next_attempt_at": to_iso8601(self.next_attempt_at),
            "finished_at": to_iso8601(self.finished_at),
            "abort_reason": self.abort_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventRef:
        return cls(
            id=data["id"],
            tenant_id=data["tenant_id"],
            process_id=data["process_id"],
            started_at=from_iso8601(data.get("started_at")) or utc_now(),
            started_by=EntityID.from_dict(data["started_by"]) if data.get("started_by") else None,
            entities=tuple(EntityID.from_dict(e) for e in data.get("entities", [])),
            documents=tuple(data.get("documents", [])),
            fields={item["id"]: Value.of(item["value"]) for item in data.get("fields", [])},
            steps=tuple(step_from_dict(s) for s in data.get("steps", [])),
            cursor=int(data.get("cursor", 0)),
            status=EventStatus(data.get("status", EventStatus.RUNNING.value)),
            revision=int(data.get("revision", 1)),
            process_version=int(data.get("process_version", 1)),
            next_attempt_at=from_iso8601(data.get("next_attempt_at")),
            finished_at=from_iso8601(data.get("finished_at")),
            abort_reason=data.get("abort_reason"),
        )


__all__ = [
    "ActionType",
    "StepState",
    "EventStatus",
    "STEP_VALID_TRANSITIONS",
    "EVENT_VALID_TRANSITIONS",
    "validate_step_transition",
    "validate_event_transition",
    "Attempt",
    "ProcConditionDef",
    "ProcActionDef",
    "ProcStepDef",
    "step_from_dict",
    "fresh_copy",
    "entry_state",
    "ProcessDef",
    "EventRef",
]
