"""Entity layer — EAV records, revisioned storage and the Entity Store."""

from procspine.entities.models import EntityID, EntityRecord
from procspine.entities.repository import (
    InMemoryRecordRepository,
    RecordRepository,
    SQLiteRecordRepository,
    create_repository,
)
from procspine.entities.store import EntityStore

__all__ = [
    "EntityID",
    "EntityRecord",
    "RecordRepository",
    "InMemoryRecordRepository",
    "SQLiteRecordRepository",
    "create_repository",
    "EntityStore",
]
