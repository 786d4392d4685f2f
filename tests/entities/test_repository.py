"""Tests for procspine.entities.repository — revisioned storage backends."""

import pytest

from procspine.core.errors import ConfigError, ConflictError, ErrorCategory, NotFoundError
from procspine.core.settings import ProcSpineSettings, StorageBackend
from procspine.entities.repository import (
    InMemoryRecordRepository,
    RecordRepository,
    SQLiteRecordRepository,
    create_repository,
)


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, sqlite_path) -> RecordRepository:
    if request.param == "memory":
        return InMemoryRecordRepository()
    repository = SQLiteRecordRepository(sqlite_path)
    request.addfinalizer(repository.close)
    return repository


class TestInsertAndGet:
    def test_insert_starts_at_revision_one(self, repo):
        row = repo.insert("t1", "entities", "e-1", "type-1", {"x": 1})
        assert row.revision == 1
        stored = repo.get("t1", "entities", "e-1")
        assert stored.body == {"x": 1}
        assert stored.group == "type-1"

    def test_missing_row(self, repo):
        assert repo.get("t1", "entities", "nope") is None

    def test_duplicate_key_conflicts(self, repo):
        repo.insert("t1", "entities", "e-1", "type-1", {})
        with pytest.raises(ConflictError):
            repo.insert("t1", "entities", "e-1", "type-1", {})

    def test_tenants_and_collections_are_isolated(self, repo):
        repo.insert("t1", "entities", "k", "g", {"who": "t1"})
        repo.insert("t2", "entities", "k", "g", {"who": "t2"})
        repo.insert("t1", "events", "k", "g", {"who": "event"})
        assert repo.get("t2", "entities", "k").body == {"who": "t2"}
        assert repo.get("t1", "events", "k").body == {"who": "event"}

    def test_stored_body_is_a_copy(self, repo):
        body = {"items": [1]}
        repo.insert("t1", "entities", "e-1", "g", body)
        body["items"].append(2)
        assert repo.get("t1", "entities", "e-1").body == {"items": [1]}


class TestCompareAndSwap:
    def test_matching_revision_increments(self, repo):
        repo.insert("t1", "entities", "e-1", "g", {"v": 1})
        row = repo.compare_and_swap("t1", "entities", "e-1", 1, {"v": 2})
        assert row.revision == 2
        assert row.group == "g"
        assert repo.get("t1", "entities", "e-1").body == {"v": 2}

    def test_stale_revision_conflicts(self, repo):
        repo.insert("t1", "entities", "e-1", "g", {"v": 1})
        repo.compare_and_swap("t1", "entities", "e-1", 1, {"v": 2})
        with pytest.raises(ConflictError) as exc_info:
            repo.compare_and_swap("t1", "entities", "e-1", 1, {"v": 3})
        assert exc_info.value.expected == 1
        assert exc_info.value.actual == 2
        assert repo.get("t1", "entities", "e-1").body == {"v": 2}

    def test_missing_row_not_found(self, repo):
        with pytest.raises(NotFoundError):
            repo.compare_and_swap("t1", "entities", "nope", 1, {})


class TestList:
    def test_insertion_order_group_and_paging(self, repo):
        for i in range(5):
            repo.insert("t1", "entities", f"e-{i}", "a" if i % 2 == 0 else "b", {"i": i})
        assert [r.key for r in repo.list("t1", "entities")] == ["e-0", "e-1", "e-2", "e-3", "e-4"]
        assert [r.key for r in repo.list("t1", "entities", group="a")] == ["e-0", "e-2", "e-4"]
        assert [r.key for r in repo.list("t1", "entities", offset=1, limit=2)] == ["e-1", "e-2"]


@pytest.mark.integration
class TestSQLitePersistence:
    def test_rows_survive_reopen(self, sqlite_path):
        first = SQLiteRecordRepository(sqlite_path)
        first.insert("t1", "events", "ev-1", "p", {"attempts": [1, 2]})
        first.compare_and_swap("t1", "events", "ev-1", 1, {"attempts": [1, 2, 3]})
        first.close()

        second = SQLiteRecordRepository(sqlite_path)
        row = second.get("t1", "events", "ev-1")
        second.close()
        assert row.revision == 2
        assert row.body == {"attempts": [1, 2, 3]}


class TestCreateRepository:
    def test_memory_default(self):
        assert isinstance(create_repository(ProcSpineSettings()), InMemoryRecordRepository)

    def test_sqlite_from_settings(self, sqlite_path):
        repo = create_repository(
            ProcSpineSettings(storage_backend=StorageBackend.SQLITE, database_path=sqlite_path)
        )
        assert isinstance(repo, SQLiteRecordRepository)
        repo.close()

    def test_unopenable_sqlite_path_is_a_config_error(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("", encoding="utf-8")
        settings = ProcSpineSettings(storage_backend=StorageBackend.SQLITE, database_path=blocker / "spine.db")

        with pytest.raises(ConfigError) as exc_info:
            create_repository(settings)
        assert exc_info.value.category is ErrorCategory.CONFIG
        assert exc_info.value.retryable is False
