"""
Structured logging for procspine.

All modules log through structlog. One call to :func:`configure_logging`
(or :func:`configure_from_settings`) picks JSON lines or console output.
While an event is being advanced its tenant and event ids are bound with
:func:`event_scope`, so everything logged underneath (condition
evaluation, actions, entity writes) carries them.

Errors are logged by passing the exception itself::

    logger.warning("action_attempt_failed", error=exc)

and the ``_expand_error`` processor turns a :class:`ProcSpineError` into
flat ``error``/``error_type``/``error_category``/``retryable`` keys plus
whatever context the error carries.

Processor chain:
    ::

        TimeStamper(iso)            (optional)
        merge_contextvars           tenant_id / event_id from event_scope
        add_log_level, add_logger_name
        _expand_error
        _add_service                "service.name"
        JSONRenderer | ConsoleRenderer

Tags:
    logging, structlog, observability, procspine-core
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from procspine.core.errors import ProcSpineError

_service = "procspine"


def _add_service(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service.name", _service)
    return event_dict


def _expand_error(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Flatten ``error=<ProcSpineError>`` into plain keys."""
    error = event_dict.get("error")
    if not isinstance(error, ProcSpineError):
        return event_dict
    event_dict["error"] = error.message
    event_dict["error_type"] = type(error).__name__
    event_dict["error_category"] = error.category.value
    event_dict["retryable"] = error.retryable
    for key, value in error.context.to_dict().items():
        event_dict.setdefault(key, value)
    return event_dict


def configure_logging(
    level: str = "INFO",
    fmt: str | None = None,
    service: str = "procspine",
    add_timestamp: bool = True,
) -> None:
    """Configure structlog for the process.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        fmt: ``"json"`` or ``"console"``; ``None`` picks JSON unless stdout is a tty
        service: Value of the ``service.name`` key on every line
        add_timestamp: Prefix lines with an ISO timestamp
    """
    global _service
    _service = service
    if fmt is None:
        fmt = "console" if sys.stdout.isatty() else "json"
    numeric_level = getattr(logging, level.upper())

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _expand_error,
        _add_service,
    ]
    if add_timestamp:
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))
    if fmt == "json":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    # Third-party libraries logging through stdlib end up on the same stream.
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)


def configure_from_settings(settings: Any) -> None:
    """Configure logging from a :class:`~procspine.core.settings.ProcSpineSettings`."""
    configure_logging(level=settings.log_level, fmt=settings.log_format, service=settings.service_name)


def get_logger(name: str | None = None) -> Any:
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


@contextmanager
def event_scope(tenant_id: str, event_id: str | None = None, **extra: Any) -> Iterator[None]:
    """Bind tenant (and event) ids for the duration of the block.

    Keys bound before entering are restored on exit, so scopes nest.
    """
    context = {"tenant_id": tenant_id, **extra}
    if event_id is not None:
        context["event_id"] = event_id
    with structlog.contextvars.bound_contextvars(**context):
        yield


__all__ = [
    "configure_logging",
    "configure_from_settings",
    "get_logger",
    "bind_context",
    "clear_context",
    "event_scope",
]
