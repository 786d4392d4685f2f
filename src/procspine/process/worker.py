"""Background worker — polls due event instances and advances them.

The :class:`ProcessWorker` is the scheduler the engine deliberately does
not have. Each poll asks the engine for running events whose
``next_attempt_at`` has passed and submits one ``advance`` per event to a
thread pool. An event already being advanced (by this worker or anyone
else) is skipped rather than queued, so one event never occupies two
pool threads.

Usage::

    worker = ProcessWorker(engine, tenant_ids=["t1"], poll_interval=2.0)
    worker.start_background()
    ...
    worker.stop()
"""

from __future__ import annotations

import os
import platform
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from procspine.core.errors import ConflictError, EventAbortedError, ProcSpineError, StepFailedError
from procspine.core.logging import get_logger
from procspine.core.settings import ProcSpineSettings, get_settings
from procspine.core.timestamps import to_iso8601, utc_now
from procspine.process.engine import ProcessEngine
from procspine.process.models import EventStatus

logger = get_logger(__name__)


@dataclass
class WorkerInfo:
    """Metadata about a running worker."""

    worker_id: str
    pid: int
    started_at: datetime
    poll_interval: float
    max_workers: int
    status: str = "running"
    hostname: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "pid": self.pid,
            "started_at": to_iso8601(self.started_at),
            "poll_interval": self.poll_interval,
            "max_workers": self.max_workers,
            "status": self.status,
            "hostname": self.hostname,
        }


@dataclass
class WorkerStats:
    """Aggregate statistics for a worker."""

    total_advanced: int = 0
    total_completed: int = 0
    total_failed: int = 0
    total_skipped: int = 0
    total_errors: int = 0
    uptime_seconds: float = 0
    last_poll_at: datetime | None = None
    active_events: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_advanced": self.total_advanced,
            "total_completed": self.total_completed,
            "total_failed": self.total_failed,
            "total_skipped": self.total_skipped,
            "total_errors": self.total_errors,
            "uptime_seconds": round(self.uptime_seconds, 2),
            "last_poll_at": to_iso8601(self.last_poll_at),
            "active_events": self.active_events,
        }


class ProcessWorker:
    """Polls the engine for due events and advances them in a thread pool.

    Thread-safety:
        The poll loop is single-threaded; only ``advance`` calls run in the
        pool. In-flight event ids are tracked so that a slow advance is not
        submitted twice, and the engine's per-event lock is taken with
        ``wait=False`` so a concurrent caller elsewhere makes us skip.
    """

    def __init__(
        self,
        engine: ProcessEngine,
        tenant_ids: list[str],
        poll_interval: float | None = None,
        max_workers: int | None = None,
        worker_id: str | None = None,
        settings: ProcSpineSettings | None = None,
    ):
        settings = settings or get_settings()
        self.engine = engine
        self.tenant_ids = list(tenant_ids)
        self._worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self._poll_interval = poll_interval if poll_interval is not None else settings.worker_poll_interval
        self._max_workers = max_workers or settings.worker_max_workers
        self._shutdown = threading.Event()
        self._started_at = utc_now()
        self._stats = WorkerStats()
        self._stats_lock = threading.Lock()

        self._pool = ThreadPoolExecutor(
            max_workers=self._max_workers,
            thread_name_prefix=self._worker_id,
        )
        self.info = WorkerInfo(
            worker_id=self._worker_id,
            pid=os.getpid(),
            started_at=self._started_at,
            poll_interval=self._poll_interval,
            max_workers=self._max_workers,
            hostname=platform.node(),
        )

        self._active: set[tuple[str, str]] = set()
        self._active_lock = threading.Lock()

    @property
    def worker_id(self) -> str:
        return self._worker_id

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """Run the poll loop until :meth:`stop` is called (blocking)."""
        logger.info(
            "worker_starting",
            worker_id=self._worker_id,
            poll_interval=self._poll_interval,
            max_workers=self._max_workers,
            tenants=len(self.tenant_ids),
        )
        try:
            self._run_loop()
        finally:
            self._pool.shutdown(wait=True)
            self.info.status = "stopped"
            logger.info("worker_stopped", worker_id=self._worker_id, **self.get_stats().to_dict())

    def start_background(self) -> threading.Thread:
        """Start the worker in a daemon thread. Returns the thread."""
        t = threading.Thread(target=self.start, name=f"{self._worker_id}-loop", daemon=True)
        t.start()
        return t

    def stop(self) -> None:
        """Request graceful shutdown; in-flight advances complete first."""
        logger.info("worker_stopping", worker_id=self._worker_id)
        self._shutdown.set()
        self.info.status = "stopping"

    def get_stats(self) -> WorkerStats:
        with self._active_lock:
            active = len(self._active)
        with self._stats_lock:
            self._stats.active_events = active
            self._stats.uptime_seconds = (utc_now() - self._started_at).total_seconds()
            return self._stats

    # ------------------------------------------------------------------ #
    # Main loop
    # ------------------------------------------------------------------ #

    def _run_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                submitted = self.poll()
                if submitted:
                    logger.debug("worker_dispatched", worker_id=self._worker_id, events=len(submitted))
            except ProcSpineError as exc:
                logger.error("worker_poll_error", worker_id=self._worker_id, error=exc)
            except Exception as exc:
                logger.exception("worker_poll_error", worker_id=self._worker_id, error=str(exc))
            self._shutdown.wait(self._poll_interval)

    def poll(self, now: datetime | None = None) -> list[Future]:
        """Submit one advance per due event. Returns the submitted futures."""
        now = now or utc_now()
        futures: list[Future] = []
        for tenant_id in self.tenant_ids:
            for event in self.engine.list_due(tenant_id, now):
                key = (tenant_id, event.id)
                with self._active_lock:
                    if key in self._active:
                        continue
                    self._active.add(key)
                futures.append(self._pool.submit(self._advance, tenant_id, event.id))
        with self._stats_lock:
            self._stats.last_poll_at = utc_now()
        return futures

    def run_once(self, now: datetime | None = None, timeout: float | None = None) -> int:
        """Poll once and wait for the submitted advances. Returns how many ran."""
        futures = self.poll(now)
        wait(futures, timeout=timeout)
        return len(futures)

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    def _advance(self, tenant_id: str, event_id: str) -> None:
        try:
            event = self.engine.advance(tenant_id, event_id, wait=False)
        except ConflictError:
            logger.debug("worker_event_busy", event_id=event_id)
            self._count("total_skipped")
        except (StepFailedError, EventAbortedError) as exc:
            logger.info("worker_event_not_runnable", event_id=event_id, reason=exc.message)
            self._count("total_skipped")
        except ProcSpineError as exc:
            logger.error("worker_advance_error", worker_id=self._worker_id, error=exc)
            self._count("total_errors")
        except Exception as exc:
            logger.exception("worker_advance_error", worker_id=self._worker_id, event_id=event_id, error=str(exc))
            self._count("total_errors")
        else:
            self._count("total_advanced")
            if event.status is EventStatus.COMPLETED:
                self._count("total_completed")
            elif event.status is EventStatus.FAILED:
                self._count("total_failed")
        finally:
            with self._active_lock:
                self._active.discard((tenant_id, event_id))

    def _count(self, stat: str) -> None:
        with self._stats_lock:
            setattr(self._stats, stat, getattr(self._stats, stat) + 1)


__all__ = ["ProcessWorker", "WorkerInfo", "WorkerStats"]
