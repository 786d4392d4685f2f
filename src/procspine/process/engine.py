"""
Process Execution Engine — drive event instances through their steps.

The engine owns no timer. It exposes one operation, :meth:`ProcessEngine.advance`
("attempt now"), which performs exactly one attempt of the current step
of one event and persists the outcome. Whoever calls it (a worker, an
entity-change hook, a test) decides the cadence.

Manifesto:
    - **Strictly sequential:** step N+1 is never attempted before step N succeeded
    - **One attempt per call:** every call on a live step appends exactly one attempt
    - **Idempotent when finished:** advancing a completed event is a no-op
    - **Single owner:** one in-flight advance per event, enforced by a keyed lock
    - **Never auto-skips:** an exhausted action fails the event until someone intervenes

Architecture:
    ::

        advance(tenant, event_id)
          │  KeyedLockArena[("event", tenant, event_id)]
          │  load EventRef (revision r)
          │
          ├─ condition step ── ConditionEngine.evaluate_by_id(scope)
          │     True  → SATISFIED, cursor + 1
          │     False / Unresolved / TypeMismatch → WAITING, next_attempt_at
          │     UnsupportedOperator / missing condition → FAILED (definition broken)
          │
          ├─ action step ───── ActionRegistry.execute(step, context)
          │     ok → DONE, cursor + 1
          │     retryable error and budget left → RETRYING, next_attempt_at
          │     otherwise → FAILED, event FAILED
          │
          ▼
        repository.compare_and_swap("events", expected_revision=r)

Examples:
    >>> engine = ProcessEngine(registry, store, conditions)
    >>> proc = engine.define_process("t1", "Verify", steps=[
    ...     ProcConditionDef(id="s1", condition_id="email_ok"),
    ...     ProcActionDef(id="s2", type=ActionType.FIELD_UPDATE,
    ...                   action_params={"field": "status", "value": "verified"}),
    ... ])
    >>> event = engine.start_event("t1", proc.type_id, entities=[person.id])
    >>> engine.advance("t1", event.id).steps[0].is_ok
    True

Tags:
    process, workflow, state-machine, retry, idempotency, procspine
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import replace
from datetime import datetime
from typing import Any

from procspine.conditions.engine import ConditionEngine
from procspine.conditions.sources import EvaluationScope, EventView
from procspine.core.errors import (
    ConflictError,
    EvaluationError,
    EventAbortedError,
    InvalidTransitionError,
    NotFoundError,
    ProcessError,
    ProcSpineError,
    StepFailedError,
    UnsupportedOperatorError,
    ValidationError,
    Violation,
)
from procspine.core.locks import KeyedLockArena
from procspine.core.logging import event_scope, get_logger
from procspine.core.settings import ProcSpineSettings, get_settings
from procspine.core.timestamps import new_id, utc_now
from procspine.entities.models import EntityID
from procspine.entities.repository import InMemoryRecordRepository, RecordRepository
from procspine.entities.store import EntityStore
from procspine.process.actions import ActionContext, ActionRegistry, build_action_registry
from procspine.process.models import (
    Attempt,
    EventRef,
    EventStatus,
    ProcActionDef,
    ProcConditionDef,
    ProcessDef,
    ProcStepDef,
    StepState,
    entry_state,
    fresh_copy,
    validate_event_transition,
    validate_step_transition,
)
from procspine.process.retry import BackoffStrategy, backoff_from_settings
from procspine.schema.fields import FieldDef
from procspine.schema.registry import SchemaRegistry
from procspine.schema.validation import apply_changes

logger = get_logger(__name__)

EVENTS = "events"


class ProcessEngine:
    """Authoring and execution of process definitions and their events."""

    def __init__(
        self,
        registry: SchemaRegistry,
        store: EntityStore,
        conditions: ConditionEngine,
        actions: ActionRegistry | None = None,
        repository: RecordRepository | None = None,
        settings: ProcSpineSettings | None = None,
        backoff: BackoffStrategy | None = None,
        locks: KeyedLockArena | None = None,
    ):
        self.registry = registry
        self.store = store
        self.conditions = conditions
        self.actions = actions or build_action_registry(store)
        self._repo = repository if repository is not None else InMemoryRecordRepository()
        self._settings = settings or get_settings()
        self._backoff = backoff or backoff_from_settings(self._settings)
        self._locks = locks or KeyedLockArena("events")

    @property
    def max_action_attempts(self) -> int:
        return self._settings.max_action_attempts

    # =========================================================================
    # Definitions
    # =========================================================================

    def define_process(
        self,
        tenant_id: str,
        name: str,
        fields: Iterable[FieldDef] | None = None,
        steps: Iterable[ProcStepDef] | None = None,
    ) -> ProcessDef:
        """Create a process definition (an entity type with steps).

        Raises:
            ValidationError: Duplicate names/ids, or condition steps naming
                unknown condition trees
        """
        steps = tuple(fresh_copy(s) for s in (steps or ()))
        self._check_condition_refs(tenant_id, steps)
        try:
            definition = ProcessDef(
                type_id=new_id(),
                tenant_id=tenant_id,
                name=name,
                fields=tuple(fields or ()),
                steps=steps,
            )
        except ValueError as exc:
            raise ValidationError(
                str(exc),
                violations=[Violation("", "invalid_definition", str(exc))],
            ).with_context(tenant_id=tenant_id) from exc
        return self.registry.register(definition)

    def get_process(self, tenant_id: str, process_ref: str) -> ProcessDef:
        """Resolve a process by id or name."""
        definition = self.registry.resolve_type(tenant_id, process_ref)
        if not isinstance(definition, ProcessDef):
            raise NotFoundError("process", process_ref).with_context(tenant_id=tenant_id)
        return definition

    def list_processes(self, tenant_id: str) -> list[ProcessDef]:
        return self.registry.list_types(tenant_id, ProcessDef)

    def add_step(
        self,
        tenant_id: str,
        process_ref: str,
        step: ProcStepDef,
        position: int | None = None,
    ) -> ProcessDef:
        """Insert a step (appended by default)."""
        step = fresh_copy(step)
        self._check_condition_refs(tenant_id, (step,))

        def apply(current: ProcessDef) -> tuple[ProcStepDef, ...]:
            if current.find_step(step.id) is not None:
                raise ValidationError(
                    f"Step id already exists: {step.id}",
                    violations=[Violation(step.id, "duplicate_id", f"step id {step.id!r} exists")],
                ).with_context(tenant_id=tenant_id, type_id=current.type_id)
            steps = list(current.steps)
            steps.insert(len(steps) if position is None else position, step)
            return tuple(steps)

        return self._mutate_steps(tenant_id, process_ref, apply, holder="add_step")

    def remove_step(self, tenant_id: str, process_ref: str, step_id: str) -> ProcessDef:
        """Soft-delete a step; new events skip it, its id stays reserved."""
        return self._mutate_steps(
            tenant_id, process_ref, _set_removed(tenant_id, step_id, True), holder="remove_step"
        )

    def restore_step(self, tenant_id: str, process_ref: str, step_id: str) -> ProcessDef:
        return self._mutate_steps(
            tenant_id, process_ref, _set_removed(tenant_id, step_id, False), holder="restore_step"
        )

    def _mutate_steps(
        self,
        tenant_id: str,
        process_ref: str,
        fn: Callable[[ProcessDef], tuple[ProcStepDef, ...] | None],
        holder: str,
    ) -> ProcessDef:
        process_id = self.get_process(tenant_id, process_ref).type_id

        def apply(current: ProcessDef) -> ProcessDef | None:
            self._ensure_no_live_events(tenant_id, process_id)
            steps = fn(current)
            if steps is None:
                return None
            return current.with_steps(steps)

        return self.registry.mutate(tenant_id, process_id, apply, holder=holder)

    def _ensure_no_live_events(self, tenant_id: str, process_id: str) -> None:
        live = [
            row.key
            for row in self._repo.list(tenant_id, EVENTS, group=process_id)
            if not EventStatus(row.body["status"]).is_terminal
        ]
        if live:
            raise ConflictError(
                "process",
                process_id,
                message=f"Process {process_id} has {len(live)} live event(s); steps are frozen",
            ).with_context(tenant_id=tenant_id, type_id=process_id)

    def _check_condition_refs(self, tenant_id: str, steps: Iterable[ProcStepDef]) -> None:
        violations = [
            Violation(s.id, "unknown_condition", f"step {s.id!r} references unknown condition {s.condition_id!r}")
            for s in steps
            if isinstance(s, ProcConditionDef)
            and not self.conditions.catalog.has_condition(tenant_id, s.condition_id)
        ]
        if violations:
            raise ValidationError.from_violations(violations).with_context(tenant_id=tenant_id)

    # =========================================================================
    # Event lifecycle
    # =========================================================================

    def start_event(
        self,
        tenant_id: str,
        process_ref: str,
        entities: Iterable[EntityID] = (),
        documents: Iterable[str] = (),
        fields: Mapping[str, Any] | None = None,
        started_by: EntityID | None = None,
        event_id: str | None = None,
    ) -> EventRef:
        """Start an event instance against the current process definition.

        Raises:
            NotFoundError: Unknown process, bound entity or bound document
            ValidationError: The event's own field values violate the process fields
        """
        process_id = self.get_process(tenant_id, process_ref).type_id
        with self.registry.critical_section(tenant_id, process_id, holder="start_event"):
            definition = self.get_process(tenant_id, process_id)
            values = apply_changes(definition, {}, fields or {})
            entities = tuple(entities)
            documents = tuple(documents)
            for entity_id in entities:
                self.store.get(tenant_id, entity_id)
            if self.conditions.documents is not None:
                for document_id in documents:
                    self.conditions.documents.get_document(tenant_id, document_id)

            now = utc_now()
            steps = [fresh_copy(s) for s in definition.active_steps]
            if steps:
                steps[0] = replace(steps[0], state=entry_state(steps[0]))
            event = EventRef(
                id=event_id or new_id(),
                tenant_id=tenant_id,
                process_id=process_id,
                started_at=now,
                started_by=started_by,
                entities=entities,
                documents=documents,
                fields=values,
                steps=tuple(steps),
                status=EventStatus.RUNNING if steps else EventStatus.COMPLETED,
                process_version=definition.version,
                next_attempt_at=now if steps else None,
                finished_at=None if steps else now,
            )
            self._repo.insert(tenant_id, EVENTS, event.id, process_id, event.to_dict())

        logger.info(
            "event_started",
            tenant_id=tenant_id,
            event_id=event.id,
            process_id=process_id,
            steps=len(event.steps),
            entities=len(entities),
        )
        return event

    def get_event(self, tenant_id: str, event_id: str) -> EventRef:
        row = self._repo.get(tenant_id, EVENTS, event_id)
        if row is None:
            raise NotFoundError("event", event_id).with_context(tenant_id=tenant_id)
        return replace(EventRef.from_dict(row.body), revision=row.revision)

    def list_events(
        self,
        tenant_id: str,
        process_ref: str | None = None,
        status: EventStatus | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[EventRef]:
        group = self.get_process(tenant_id, process_ref).type_id if process_ref else None
        events = [
            replace(EventRef.from_dict(row.body), revision=row.revision)
            for row in self._repo.list(tenant_id, EVENTS, group=group)
        ]
        if status is not None:
            events = [e for e in events if e.status == status]
        end = None if limit is None else offset + limit
        return events[offset:end]

    def list_due(self, tenant_id: str, now: datetime | None = None) -> list[EventRef]:
        """Running events whose current step is due for an attempt."""
        now = now or utc_now()
        return [
            e
            for e in self.list_events(tenant_id, status=EventStatus.RUNNING)
            if e.next_attempt_at is None or e.next_attempt_at <= now
        ]

    def update_event_fields(self, tenant_id: str, event_id: str, changes: Mapping[str, Any]) -> EventRef:
        """Partially update the event's own field values."""
        with self._locks.hold(("event", tenant_id, event_id), holder="update_fields"):
            event = self.get_event(tenant_id, event_id)
            if event.is_terminal:
                raise ProcessError(
                    f"Event {event_id} is {event.status.value}; its fields are read-only"
                ).with_context(tenant_id=tenant_id, event_id=event_id)
            definition = self.get_process(tenant_id, event.process_id)
            values = apply_changes(definition, event.fields, changes)
            return self._save(event, replace(event, fields=values))

    # =========================================================================
    # Advancing
    # =========================================================================

    def advance(self, tenant_id: str, event_id: str, wait: bool = True) -> EventRef:
        """Attempt the current step of one event once.

        Args:
            wait: Block while another advance of the same event is in
                flight; with ``wait=False`` a busy event raises ConflictError

        Raises:
            NotFoundError: Unknown event
            EventAbortedError: The event was aborted
            StepFailedError: The current step is terminally failed
            ConflictError: Busy (``wait=False``) or the stored event changed underneath
        """
        key = ("event", tenant_id, event_id)
        guard = (
            self._locks.hold(key, holder="advance")
            if wait
            else self._locks.try_hold(key, holder="advance")
        )
        with guard, event_scope(tenant_id, event_id):
            event = self.get_event(tenant_id, event_id)
            match event.status:
                case EventStatus.ABORTED:
                    raise EventAbortedError(event_id).with_context(tenant_id=tenant_id)
                case EventStatus.FAILED:
                    raise StepFailedError(event_id, event.cursor).with_context(
                        tenant_id=tenant_id, step_index=event.cursor
                    )
                case EventStatus.COMPLETED:
                    logger.debug("advance_noop", status=event.status.value)
                    return event

            step = event.current_step
            now = utc_now()
            definition = self.get_process(tenant_id, event.process_id)
            if isinstance(step, ProcConditionDef):
                updated = self._check_condition(event, definition, step, now)
            else:
                updated = self._run_action(event, definition, step, now)
            return self._save(event, updated)

    def _check_condition(
        self,
        event: EventRef,
        definition: ProcessDef,
        step: ProcConditionDef,
        now: datetime,
    ) -> EventRef:
        scope = self._scope(event, definition)
        try:
            satisfied = self.conditions.evaluate_by_id(event.tenant_id, step.condition_id, scope)
        except (UnsupportedOperatorError, NotFoundError) as exc:
            failed = _transition(step, StepState.FAILED, attempts=step.attempts + (_failed_attempt(now, exc),))
            logger.error(
                "step_failed",
                step_index=event.cursor,
                step_id=step.id,
                error=exc,
            )
            return self._fail(event, failed)
        except EvaluationError as exc:
            waiting = _transition(step, StepState.WAITING, attempts=step.attempts + (_failed_attempt(now, exc),))
            logger.warning(
                "condition_check_failed",
                step_index=event.cursor,
                step_id=step.id,
                error=exc,
            )
            return self._retry_later(event, waiting, now)

        if satisfied:
            ok = _transition(
                step,
                StepState.SATISFIED,
                attempts=step.attempts + (Attempt(at=now, ok=True),),
                is_ok=True,
            )
            logger.info("step_satisfied", step_index=event.cursor, step_id=step.id)
            return self._complete_step(event, ok, now)

        waiting = _transition(step, StepState.WAITING, attempts=step.attempts + (Attempt(at=now, ok=False),))
        logger.info("condition_not_met", step_index=event.cursor, step_id=step.id, attempts=len(waiting.attempts))
        return self._retry_later(event, waiting, now)

    def _run_action(
        self,
        event: EventRef,
        definition: ProcessDef,
        step: ProcActionDef,
        now: datetime,
    ) -> EventRef:
        context = ActionContext(
            tenant_id=event.tenant_id,
            event=event,
            process=definition,
            scope=self._scope(event, definition),
            conditions=self.conditions,
        )
        try:
            self.actions.execute(step, context)
        except ProcSpineError as exc:
            attempts = step.attempts + (_failed_attempt(now, exc),)
            used = step.attempts_in_budget + 1
            if not exc.retryable or used >= self.max_action_attempts:
                failed = _transition(step, StepState.FAILED, attempts=attempts)
                logger.error(
                    "step_failed",
                    step_index=event.cursor,
                    step_id=step.id,
                    action=step.type.value,
                    attempts=used,
                    error=exc,
                )
                return self._fail(event, failed)
            retrying = _transition(step, StepState.RETRYING, attempts=attempts)
            logger.warning(
                "action_attempt_failed",
                step_index=event.cursor,
                step_id=step.id,
                action=step.type.value,
                attempts=used,
                max_attempts=self.max_action_attempts,
                error=exc,
            )
            return self._retry_later(event, retrying, now)

        done = _transition(
            step,
            StepState.DONE,
            attempts=step.attempts + (Attempt(at=now, ok=True),),
            is_done=True,
        )
        logger.info("step_done", step_index=event.cursor, step_id=step.id, action=step.type.value)
        return self._complete_step(event, done, now)

    # ── Outcome helpers ──────────────────────────────────────────

    def _complete_step(self, event: EventRef, step: ProcStepDef, now: datetime) -> EventRef:
        event = event.with_step(event.cursor, step)
        cursor = event.cursor + 1
        if cursor >= len(event.steps):
            validate_event_transition(event.status, EventStatus.COMPLETED)
            logger.info("event_completed", steps=len(event.steps))
            return replace(
                event,
                cursor=cursor,
                status=EventStatus.COMPLETED,
                next_attempt_at=None,
                finished_at=now,
            )
        upcoming = event.steps[cursor]
        entered = _transition(upcoming, entry_state(upcoming))
        return replace(event.with_step(cursor, entered), cursor=cursor, next_attempt_at=now)

    def _retry_later(self, event: EventRef, step: ProcStepDef, now: datetime) -> EventRef:
        delay_index = max(step.attempts_in_budget - 1, 0)
        return replace(
            event.with_step(event.cursor, step),
            next_attempt_at=self._backoff.next_attempt_at(now, delay_index),
        )

    def _fail(self, event: EventRef, step: ProcStepDef) -> EventRef:
        validate_event_transition(event.status, EventStatus.FAILED)
        return replace(
            event.with_step(event.cursor, step),
            status=EventStatus.FAILED,
            next_attempt_at=None,
        )

    # =========================================================================
    # Intervention
    # =========================================================================

    def abort(self, tenant_id: str, event_id: str, reason: str | None = None) -> EventRef:
        """Abort an event. Waits for an in-flight advance to finish first.

        Aborting an aborted event is a no-op; aborting a completed one is
        an InvalidTransitionError.
        """
        key = ("event", tenant_id, event_id)
        with self._locks.hold(key, holder="abort"), event_scope(tenant_id, event_id):
            event = self.get_event(tenant_id, event_id)
            if event.status is EventStatus.ABORTED:
                return event
            validate_event_transition(event.status, EventStatus.ABORTED)
            saved = self._save(
                event,
                replace(
                    event,
                    status=EventStatus.ABORTED,
                    next_attempt_at=None,
                    finished_at=utc_now(),
                    abort_reason=reason,
                ),
            )
            logger.info("event_aborted", step_index=event.cursor, reason=reason)
            return saved

    def retry_failed_step(self, tenant_id: str, event_id: str) -> EventRef:
        """Put a FAILED event back to RUNNING with a fresh attempt budget.

        The failed step's attempt history is kept; only attempts made after
        this call count against ``max_action_attempts``.
        """
        key = ("event", tenant_id, event_id)
        with self._locks.hold(key, holder="retry"), event_scope(tenant_id, event_id):
            event = self.get_event(tenant_id, event_id)
            if event.status is not EventStatus.FAILED:
                raise InvalidTransitionError(event.status.value, EventStatus.RUNNING.value, "EventStatus")
            step = event.current_step
            reset = _transition(step, entry_state(step), retry_from=len(step.attempts))
            now = utc_now()
            saved = self._save(
                event,
                replace(
                    event.with_step(event.cursor, reset),
                    status=EventStatus.RUNNING,
                    next_attempt_at=now,
                ),
            )
            logger.info("step_retry_requested", step_index=event.cursor, step_id=step.id)
            return saved

    # =========================================================================
    # Internals
    # =========================================================================

    def _scope(self, event: EventRef, definition: ProcessDef) -> EvaluationScope:
        return EvaluationScope(
            tenant_id=event.tenant_id,
            entities=event.entities,
            documents=event.documents,
            event=EventView(
                id=event.id,
                process_id=event.process_id,
                started_at=event.started_at,
                definition=definition,
                fields=event.fields,
                started_by=event.started_by,
            ),
        )

    def _save(self, previous: EventRef, updated: EventRef) -> EventRef:
        updated = replace(updated, revision=previous.revision + 1)
        self._repo.compare_and_swap(
            previous.tenant_id, EVENTS, previous.id, previous.revision, updated.to_dict()
        )
        return updated


def _transition(step: ProcStepDef, target: StepState, **changes: Any) -> ProcStepDef:
    validate_step_transition(step.state, target)
    return replace(step, state=target, **changes)


def _failed_attempt(at: datetime, exc: ProcSpineError) -> Attempt:
    return Attempt(at=at, ok=False, error=exc.message, error_type=type(exc).__name__)


def _set_removed(tenant_id: str, step_id: str, removed: bool):
    def apply(current: ProcessDef) -> tuple[ProcStepDef, ...] | None:
        step = current.find_step(step_id)
        if step is None:
            raise NotFoundError("step", step_id).with_context(tenant_id=tenant_id, type_id=current.type_id)
        if step.removed == removed:
            return None
        return tuple(replace(s, removed=removed) if s.id == step_id else s for s in current.steps)

    return apply


__all__ = ["ProcessEngine", "EVENTS"]
