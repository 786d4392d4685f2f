"""Tests for procspine.entities.store — the Entity Store."""

import threading

import pytest

from procspine.core.errors import ConflictError, NotFoundError, ValidationError
from procspine.core.values import Value
from procspine.entities.models import EntityID
from procspine.entities.repository import InMemoryRecordRepository, SQLiteRecordRepository
from procspine.entities.store import EntityStore
from procspine.schema.fields import FieldDef, FieldType

TENANT = "t1"


# ── Create ───────────────────────────────────────────────────────────────


class TestCreateEntity:
    def test_returns_record_with_values(self, person, person_type):
        assert person.revision == 1
        assert person.type_id == person_type.type_id
        assert person.get("f-email") == Value.of("a@x.com")
        assert person.values_by_name(person_type) == {"email": "a@x.com", "age": 30, "tags": ["vip", "beta"]}

    def test_missing_required_field(self, store, person_type):
        with pytest.raises(ValidationError) as exc_info:
            store.create_entity(TENANT, "Person", {})
        assert exc_info.value.codes == {"missing_required"}

    def test_all_violations_reported(self, store, person_type):
        with pytest.raises(ValidationError) as exc_info:
            store.create_entity(TENANT, "Person", {"email": "bad", "age": "x", "shoe": 9})
        assert exc_info.value.codes == {"validator_failed", "type_mismatch", "unknown_field"}

    def test_unknown_type(self, store):
        with pytest.raises(NotFoundError):
            store.create_entity(TENANT, "Ghost", {})

    def test_issued_by_recorded(self, store, person_type):
        creator = EntityID("User", "u-1")
        record = store.create_entity(TENANT, "Person", {"email": "a@x.com"}, issued_by=creator)
        assert record.created_by == creator
        assert record.updated_by == creator

    def test_explicit_id(self, store, person_type):
        record = store.create_entity(TENANT, "Person", {"email": "a@x.com"}, entity_id="p-1")
        assert record.id == EntityID(person_type.type_id, "p-1")

    def test_same_explicit_id_under_two_types(self, store, registry, person_type):
        registry.create_type(TENANT, "Equipment", [FieldDef(id="f-serial", name="serial", type=FieldType.STRING)])
        person = store.create_entity(TENANT, "Person", {"email": "a@x.com"}, entity_id="e1")
        gear = store.create_entity(TENANT, "Equipment", {"serial": "SN-1"}, entity_id="e1")

        assert store.get(TENANT, person.id).get("f-email") == Value.of("a@x.com")
        assert store.get(TENANT, gear.id).get("f-serial") == Value.of("SN-1")
        assert [r.id.id for r in store.list_entities(TENANT, "Equipment")] == ["e1"]

    def test_schema_mutation_waits_for_write(self, registry, person_type):
        mutated = threading.Event()
        observed = {}

        def add_nickname():
            registry.add_field(TENANT, person_type.type_id, "nickname", FieldType.STRING)
            mutated.set()

        class SlowRepository(InMemoryRecordRepository):
            def insert(self, *args, **kwargs):
                mutator = threading.Thread(target=add_nickname)
                mutator.start()
                observed["mutated_during_write"] = mutated.wait(timeout=0.2)
                observed["version_at_write"] = registry.version(TENANT, person_type.type_id)
                observed["mutator"] = mutator
                return super().insert(*args, **kwargs)

        store = EntityStore(registry, SlowRepository())
        record = store.create_entity(TENANT, "Person", {"email": "a@x.com"})
        observed["mutator"].join()

        assert observed["mutated_during_write"] is False
        assert record.schema_version == observed["version_at_write"] == person_type.version
        assert registry.version(TENANT, person_type.type_id) == person_type.version + 1


# ── Update ───────────────────────────────────────────────────────────────


class TestUpdateEntity:
    def test_partial_update(self, store, person):
        updated = store.update_entity(TENANT, person.id, {"status": "verified"}, expected_revision=1)
        assert updated.revision == 2
        assert updated.get("f-status") == Value.of("verified")
        assert updated.get("f-email") == Value.of("a@x.com")

    def test_stale_revision_conflicts(self, store, person):
        store.update_entity(TENANT, person.id, {"age": 31}, expected_revision=1)
        with pytest.raises(ConflictError) as exc_info:
            store.update_entity(TENANT, person.id, {"age": 32}, expected_revision=1)
        assert exc_info.value.actual == 2

    def test_clearing_required_field_fails(self, store, person):
        with pytest.raises(ValidationError):
            store.update_entity(TENANT, person.id, {"email": None}, expected_revision=1)

    def test_newly_required_field_applies_on_next_update(self, store, registry, person, person_type):
        registry.set_required(TENANT, person_type.type_id, "f-status")
        assert store.get(TENANT, person.id).revision == 1
        with pytest.raises(ValidationError) as exc_info:
            store.update_entity(TENANT, person.id, {"age": 31}, expected_revision=1)
        assert exc_info.value.codes == {"missing_required"}

    def test_removed_required_field_never_fails(self, store, registry, person, person_type):
        registry.remove_field(TENANT, person_type.type_id, "f-email")
        updated = store.update_entity(TENANT, person.id, {"age": 31}, expected_revision=1)
        assert updated.get("f-email") is None

    def test_unknown_entity(self, store, person_type):
        with pytest.raises(NotFoundError):
            store.update_entity(TENANT, EntityID(person_type.type_id, "ghost"), {}, expected_revision=1)

    def test_wrong_type_is_not_found(self, store, registry, person):
        other = registry.create_type(TENANT, "Equipment")
        with pytest.raises(NotFoundError):
            store.update_entity(TENANT, EntityID(other.type_id, person.id.id), {}, expected_revision=1)

    def test_concurrent_updates_on_same_revision(self, store, person):
        barrier = threading.Barrier(2)
        outcomes = []

        def update(age: int):
            barrier.wait()
            try:
                store.update_entity(TENANT, person.id, {"age": age}, expected_revision=1)
                outcomes.append("ok")
            except ConflictError:
                outcomes.append("conflict")

        threads = [threading.Thread(target=update, args=(age,)) for age in (40, 41)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["conflict", "ok"]
        assert store.get(TENANT, person.id).revision == 2


# ── Soft-delete ──────────────────────────────────────────────────────────


class TestSoftDeletedFields:
    def test_hidden_from_reads_but_kept(self, store, registry, person, person_type):
        registry.remove_field(TENANT, person_type.type_id, "f-age")
        assert store.get(TENANT, person.id).get("f-age") is None
        audit = store.get(TENANT, person.id, include_removed=True)
        assert audit.get("f-age") == Value.of(30)

    def test_restore_brings_value_back(self, store, registry, person, person_type):
        registry.remove_field(TENANT, person_type.type_id, "f-age")
        store.update_entity(TENANT, person.id, {"status": "x"}, expected_revision=1)
        restored = registry.restore_field(TENANT, person_type.type_id, "f-age")
        assert restored.name == "age"
        assert restored.type is FieldType.NUMBER
        assert store.get(TENANT, person.id).get("f-age") == Value.of(30)

    def test_list_excludes_removed_fields(self, store, registry, person, person_type):
        registry.remove_field(TENANT, person_type.type_id, "f-tags")
        [listed] = store.list_entities(TENANT, "Person")
        assert "f-tags" not in listed.fields


# ── Reads ────────────────────────────────────────────────────────────────


class TestReads:
    def test_get_entity_by_type_name(self, store, person):
        assert store.get_entity(TENANT, "Person", person.id.id) == person

    def test_tenant_isolation(self, store, registry, person):
        registry.create_type("t2", "Person")
        with pytest.raises(NotFoundError):
            store.get_entity("t2", "Person", person.id.id)

    def test_list_pagination(self, store, person_type):
        ids = [store.create_entity(TENANT, "Person", {"email": f"p{i}@x.com"}).id.id for i in range(4)]
        page = store.list_entities(TENANT, "Person", offset=1, limit=2)
        assert [r.id.id for r in page] == ids[1:3]


@pytest.mark.integration
class TestSQLiteBackedStore:
    def test_dates_round_trip_through_sqlite(self, registry, sqlite_path):
        repo = SQLiteRecordRepository(sqlite_path)
        store = EntityStore(registry, repo)
        registry.create_type(TENANT, "Contract", [])
        contract = registry.get_type_by_name(TENANT, "Contract")
        registry.add_field(TENANT, contract.type_id, "signed", FieldType.DATE, field_id="f-signed")

        record = store.create_entity(TENANT, "Contract", {"signed": {"$date": "2025-01-09T00:00:00Z"}})
        loaded = store.get(TENANT, record.id)
        repo.close()
        assert loaded.get("f-signed").kind.value == "date"
        assert loaded.get("f-signed") == record.get("f-signed")
