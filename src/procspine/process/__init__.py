"""
Process layer — definitions, event instances and their execution.

::

    ProcessDef (EntityTypeDef + steps)
      │  start_event
      ▼
    EventRef ── ProcessEngine.advance ──► ConditionEngine / ActionRegistry
      ▲
      └── ProcessWorker (poll list_due → advance in a thread pool)
"""

from procspine.process.actions import (
    ActionContext,
    ActionRegistry,
    EmailMessage,
    EmailSender,
    InMemoryOutbox,
    build_action_registry,
)
from procspine.process.engine import ProcessEngine
from procspine.process.models import (
    ActionType,
    Attempt,
    EventRef,
    EventStatus,
    ProcActionDef,
    ProcConditionDef,
    ProcessDef,
    ProcStepDef,
    StepState,
)
from procspine.process.retry import BackoffStrategy, ConstantBackoff, ExponentialBackoff, LinearBackoff
from procspine.process.worker import ProcessWorker

__all__ = [
    "ActionContext",
    "ActionRegistry",
    "EmailMessage",
    "EmailSender",
    "InMemoryOutbox",
    "build_action_registry",
    "ProcessEngine",
    "ActionType",
    "Attempt",
    "EventRef",
    "EventStatus",
    "ProcActionDef",
    "ProcConditionDef",
    "ProcessDef",
    "ProcStepDef",
    "StepState",
    "BackoffStrategy",
    "ConstantBackoff",
    "ExponentialBackoff",
    "LinearBackoff",
    "ProcessWorker",
]
