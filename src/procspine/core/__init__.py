"""procspine core primitives.

Shared by every other layer: the tagged :class:`Value`, the error
hierarchy, structlog setup, pydantic settings, the keyed lock arena and
UTC timestamp helpers. Nothing in here imports from the rest of the
package.
"""

from procspine.core.errors import (
    ErrorCategory,
    ErrorContext,
    ProcSpineError,
    is_retryable,
)
from procspine.core.locks import KeyedLockArena
from procspine.core.logging import configure_logging, event_scope, get_logger
from procspine.core.settings import ProcSpineSettings, StorageBackend, get_settings
from procspine.core.values import Value, ValueKind

__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "ProcSpineError",
    "is_retryable",
    "KeyedLockArena",
    "event_scope",
    "configure_logging",
    "get_logger",
    "ProcSpineSettings",
    "StorageBackend",
    "get_settings",
    "Value",
    "ValueKind",
]
