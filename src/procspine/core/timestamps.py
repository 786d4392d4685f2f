"""
Clock, identifier and ISO-8601 helpers shared by every procspine layer.

Manifesto:
    Attempt bookkeeping is only as trustworthy as its timestamps. Every
    layer reads the clock through ``utc_now()`` so tests can patch a single
    seam, and every identifier comes from ``new_id()`` so ids look the same
    whether they name a type, a field, a record or an event.

    - **utc_now():** Timezone-aware UTC datetime
    - **new_id():** Random UUID4 rendered as a string
    - **to_iso8601() / from_iso8601():** Safe serialization round-trip

Tags:
    timestamps, uuid, utc, datetime, procspine-core, stdlib-only

STDLIB ONLY - NO PYDANTIC.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def new_id() -> str:
    """Generate a new opaque identifier (UUID4 string)."""
    return str(uuid.uuid4())


def to_iso8601(dt: datetime | None) -> str | None:
    """Convert datetime to ISO 8601 string."""
    if dt is None:
        return None
    return dt.isoformat()


def from_iso8601(s: str | None) -> datetime | None:
    """Parse ISO 8601 string to datetime.

    A trailing ``Z`` is accepted. Naive values are assumed to be UTC.
    """
    if s is None:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


__all__ = ["utc_now", "new_id", "to_iso8601", "from_iso8601"]
