"""
Action executors — the side effects behind action steps.

Each :class:`ActionType` maps to one executor in an :class:`ActionRegistry`.
An executor either returns (success) or raises. Anything that is not a
``ProcSpineError`` is wrapped in a retryable ``ActionExecutionError`` so
the engine can always record the attempt and decide on retry from the
error's ``retryable`` flag.

Action params:
    ::

        Email        {"to": "a@x.com" | "to_query": "<query id>",
                      "subject": "...", "body": "..."}
        FieldUpdate  {"field": "<field id or name>", "value": <wire value>,
                      "entity_type": "<type id or name>"  (optional)}
        None         {}

FieldUpdate goes through the Entity Store's optimistic-concurrency path:
read, then ``update_entity(expected_revision=...)``. A ``ConflictError``
is raised to the engine, which records a failed attempt and retries the
action later with a fresh read.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from procspine.conditions.engine import ConditionEngine
from procspine.conditions.sources import EvaluationScope
from procspine.core.errors import ActionExecutionError, NotFoundError, ProcSpineError
from procspine.core.logging import get_logger
from procspine.core.values import ValueKind
from procspine.entities.models import EntityID
from procspine.entities.store import EntityStore
from procspine.process.models import ActionType, EventRef, ProcActionDef, ProcessDef

logger = get_logger(__name__)


@dataclass(frozen=True)
class ActionContext:
    """Everything an executor may read while running one action attempt."""

    tenant_id: str
    event: EventRef
    process: ProcessDef
    scope: EvaluationScope
    conditions: ConditionEngine

    __hash__ = None

    @property
    def issuer(self) -> EntityID:
        """Identity recorded as ``updated_by`` for writes made by this event."""
        return EntityID(type_id=self.process.type_id, id=self.event.id)


ActionExecutor = Callable[[ProcActionDef, ActionContext], None]


class ActionRegistry:
    """Maps action types to executors."""

    def __init__(self):
        self._executors: dict[ActionType, ActionExecutor] = {}
        self._lock = threading.Lock()

    def register(self, action_type: ActionType, executor: ActionExecutor) -> None:
        with self._lock:
            self._executors[ActionType(action_type)] = executor

    def get(self, action_type: ActionType) -> ActionExecutor:
        with self._lock:
            executor = self._executors.get(action_type)
        if executor is None:
            raise NotFoundError("action_executor", action_type.value)
        return executor

    def execute(self, step: ProcActionDef, context: ActionContext) -> None:
        """Run one attempt of *step*.

        Raises:
            ProcSpineError: Executor failures, foreign exceptions wrapped
                in ``ActionExecutionError``
        """
        executor = self.get(step.type)
        try:
            executor(step, context)
        except ProcSpineError:
            raise
        except Exception as exc:
            raise ActionExecutionError(
                f"{step.type.value} action {step.id} failed: {exc}",
                cause=exc,
            ).with_context(tenant_id=context.tenant_id, event_id=context.event.id) from exc


# =============================================================================
# EXECUTORS
# =============================================================================


def noop_action(step: ProcActionDef, context: ActionContext) -> None:
    logger.debug("noop_action", event_id=context.event.id, step_id=step.id)


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    body: str


@runtime_checkable
class EmailSender(Protocol):
    def send(self, message: EmailMessage) -> None:
        ...


class InMemoryOutbox:
    """Collects sent messages; used by tests and local runs."""

    def __init__(self):
        self.sent: list[EmailMessage] = []
        self._lock = threading.Lock()

    def send(self, message: EmailMessage) -> None:
        with self._lock:
            self.sent.append(message)


class EmailAction:
    """Sends an email; the recipient is literal or resolved through a query."""

    def __init__(self, sender: EmailSender):
        self.sender = sender

    def __call__(self, step: ProcActionDef, context: ActionContext) -> None:
        params = step.action_params
        recipient = self._recipient(params, context)
        message = EmailMessage(
            to=recipient,
            subject=str(params.get("subject", "")),
            body=str(params.get("body", "")),
        )
        self.sender.send(message)
        logger.info("email_sent", event_id=context.event.id, step_id=step.id, to=recipient)

    @staticmethod
    def _recipient(params: dict[str, Any], context: ActionContext) -> str:
        if params.get("to"):
            return str(params["to"])
        query_id = params.get("to_query")
        if not query_id:
            raise ActionExecutionError("Email action needs 'to' or 'to_query'", retryable=False)
        value = context.conditions.resolve(query_id, context.scope)
        if value.kind is not ValueKind.STRING or not value.data:
            raise ActionExecutionError(
                f"Recipient query {query_id!r} resolved to {value.kind.value}, expected a string",
            )
        return value.data


class FieldUpdateAction:
    """Writes one field on the first bound entity whose type defines it."""

    def __init__(self, store: EntityStore):
        self.store = store

    def __call__(self, step: ProcActionDef, context: ActionContext) -> None:
        params = step.action_params
        field_ref = params.get("field")
        if not field_ref:
            raise ActionExecutionError("FieldUpdate action needs 'field'", retryable=False)
        target = self._target(field_ref, params.get("entity_type"), context)

        record = self.store.get(context.tenant_id, target)
        self.store.update_entity(
            context.tenant_id,
            target,
            {field_ref: params.get("value")},
            expected_revision=record.revision,
            issued_by=context.issuer,
        )
        logger.info(
            "entity_field_updated_by_action",
            event_id=context.event.id,
            step_id=step.id,
            entity_id=str(target),
            field=field_ref,
        )

    def _target(self, field_ref: str, entity_type: str | None, context: ActionContext) -> EntityID:
        registry = self.store.registry
        wanted = registry.resolve_type(context.tenant_id, entity_type).type_id if entity_type else None
        for entity_id in context.event.entities:
            if wanted is not None and entity_id.type_id != wanted:
                continue
            field_def = registry.get_type(context.tenant_id, entity_id.type_id).find_field(field_ref)
            if field_def is not None and field_def.is_active:
                return entity_id
        raise ActionExecutionError(
            f"No bound entity defines field {field_ref!r}",
            retryable=False,
        ).with_context(tenant_id=context.tenant_id, event_id=context.event.id)


def build_action_registry(store: EntityStore, email_sender: EmailSender | None = None) -> ActionRegistry:
    """Registry with the three built-in action types."""
    registry = ActionRegistry()
    registry.register(ActionType.NONE, noop_action)
    registry.register(ActionType.FIELD_UPDATE, FieldUpdateAction(store))
    registry.register(ActionType.EMAIL, EmailAction(email_sender or InMemoryOutbox()))
    return registry


__all__ = [
    "ActionContext",
    "ActionExecutor",
    "ActionRegistry",
    "noop_action",
    "EmailMessage",
    "EmailSender",
    "InMemoryOutbox",
    "EmailAction",
    "FieldUpdateAction",
    "build_action_registry",
]
