"""Keyed lock arena — per-key critical sections inside one process.

WHY
───
Schema mutations must serialize per ``(tenant, type)`` and advancing a
process instance must be exclusive per event id, while unrelated keys
proceed in parallel. A single global lock would serialize everything; a
lock object per key kept forever would leak. ``KeyedLockArena`` hands out
one ``threading.Lock`` per live key and forgets the key once nobody holds
or waits on it.

ARCHITECTURE
────────────
::

    KeyedLockArena()
      ├── .hold(key, holder)          ─ blocking context manager
      ├── .try_hold(key, holder)      ─ non-blocking context manager (raises if busy)
      ├── .acquire(key, holder, ...)  ─ try-lock with optional timeout
      ├── .release(key, holder)       ─ explicit unlock
      ├── .is_locked(key)             ─ check without acquiring
      ├── .get_lock_holder(key)       ─ who holds it
      └── .list_active_locks()        ─ snapshot of held locks

    Key convention: tuples, e.g. ("schema", tenant_id, type_id)
                                 ("event", tenant_id, event_id)

BEST PRACTICES
──────────────
- Prefer ``hold()`` / ``try_hold()``; they release in ``finally``.
- Locks are not re-entrant. Never call back into an operation that takes
  the same key while holding it.

Example::

    arena = KeyedLockArena()
    with arena.hold(("schema", tenant_id, type_id), holder="modify_field"):
        ...
"""

from __future__ import annotations

import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime

from procspine.core.errors import ConflictError
from procspine.core.timestamps import utc_now


@dataclass
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holder: str | None = None
    acquired_at: datetime | None = None
    users: int = 0


class KeyedLockArena:
    """Hands out exclusive locks keyed by arbitrary hashable keys."""

    def __init__(self, name: str = "locks"):
        self.name = name
        self._entries: dict[Hashable, _LockEntry] = {}
        self._mutex = threading.Lock()

    def _checkout(self, key: Hashable) -> _LockEntry:
        with self._mutex:
            entry = self._entries.get(key)
            if entry is None:
                entry = _LockEntry()
                self._entries[key] = entry
            entry.users += 1
            return entry

    def _checkin(self, key: Hashable, entry: _LockEntry) -> None:
        with self._mutex:
            entry.users -= 1
            if entry.users <= 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def acquire(
        self,
        key: Hashable,
        holder: str = "",
        blocking: bool = True,
        timeout: float | None = None,
    ) -> bool:
        """Try to acquire the lock for *key*.

        Args:
            key: Lock key
            holder: Free-form owner label (diagnostics only)
            blocking: Wait for the lock if it is held
            timeout: Max seconds to wait when blocking (None = forever)

        Returns:
            True if acquired, False if busy (non-blocking) or timed out
        """
        entry = self._checkout(key)
        if not blocking:
            acquired = entry.lock.acquire(blocking=False)
        elif timeout is None:
            acquired = entry.lock.acquire()
        else:
            acquired = entry.lock.acquire(timeout=timeout)

        if not acquired:
            self._checkin(key, entry)
            return False

        entry.holder = holder
        entry.acquired_at = utc_now()
        return True

    def release(self, key: Hashable) -> bool:
        """Release the lock for *key*. Returns False if it was not held."""
        with self._mutex:
            entry = self._entries.get(key)
        if entry is None or not entry.lock.locked():
            return False
        entry.holder = None
        entry.acquired_at = None
        entry.lock.release()
        self._checkin(key, entry)
        return True

    @contextmanager
    def hold(self, key: Hashable, holder: str = "", timeout: float | None = None) -> Iterator[None]:
        """Hold the lock for *key* for the duration of the block (blocking)."""
        if not self.acquire(key, holder, blocking=True, timeout=timeout):
            raise ConflictError(
                "lock",
                str(key),
                message=f"Timed out waiting for lock {key!r} in {self.name}",
            )
        try:
            yield
        finally:
            self.release(key)

    @contextmanager
    def try_hold(self, key: Hashable, holder: str = "") -> Iterator[None]:
        """Hold the lock for *key* or raise ConflictError immediately if busy."""
        if not self.acquire(key, holder, blocking=False):
            raise ConflictError(
                "lock",
                str(key),
                message=f"Lock {key!r} is held by {self.get_lock_holder(key)!r}",
            )
        try:
            yield
        finally:
            self.release(key)

    def is_locked(self, key: Hashable) -> bool:
        with self._mutex:
            entry = self._entries.get(key)
            return entry is not None and entry.lock.locked()

    def get_lock_holder(self, key: Hashable) -> str | None:
        with self._mutex:
            entry = self._entries.get(key)
            if entry is None or not entry.lock.locked():
                return None
            return entry.holder

    def list_active_locks(self) -> list[dict]:
        """List all currently held locks."""
        with self._mutex:
            return [
                {
                    "lock_key": key,
                    "holder": entry.holder,
                    "acquired_at": entry.acquired_at,
                }
                for key, entry in self._entries.items()
                if entry.lock.locked()
            ]

    def __len__(self) -> int:
        with self._mutex:
            return len(self._entries)
