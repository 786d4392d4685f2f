"""Tests for procspine.process.engine — the Process Execution Engine.

Covers:
- Process authoring (define, step add/remove/restore, live-event guard)
- Event start (binding checks, step copies, event fields)
- advance(): one attempt per call, condition gates, action retries, terminal states
- Intervention: abort, retry_failed_step
- Mutual exclusion of concurrent advances
"""

import threading
from datetime import timedelta

import pytest

from procspine.conditions.models import Operator, QueryDef, SingleCondition, SourceKind
from procspine.conditions.sources import DocumentDesc
from procspine.core.errors import (
    ActionExecutionError,
    ConflictError,
    EventAbortedError,
    InvalidTransitionError,
    NotFoundError,
    ProcessError,
    StepFailedError,
    ValidationError,
)
from procspine.core.locks import KeyedLockArena
from procspine.core.timestamps import utc_now
from procspine.core.values import Value
from procspine.entities.models import EntityID
from procspine.entities.repository import SQLiteRecordRepository
from procspine.process.actions import build_action_registry
from procspine.process.engine import ProcessEngine
from procspine.process.models import (
    ActionType,
    EventStatus,
    ProcActionDef,
    ProcConditionDef,
    StepState,
)
from procspine.process.retry import ConstantBackoff
from procspine.schema.fields import FieldDef, FieldType

TENANT = "t1"


# ── Helpers ──────────────────────────────────────────────────────────────


class FlakyAction:
    """Fails the first ``failures`` calls, then succeeds."""

    def __init__(self, failures: int = 0, retryable: bool = True):
        self.failures = failures
        self.retryable = retryable
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, step, context):
        with self._lock:
            self.calls += 1
            call = self.calls
        if call <= self.failures:
            raise ActionExecutionError("smtp unavailable", retryable=self.retryable)


@pytest.fixture
def verify_process(engine, email_condition):
    """Verify: s1 = email_ok gate, s2 = FieldUpdate status=verified."""
    return engine.define_process(
        TENANT,
        "Verify",
        steps=[
            ProcConditionDef(id="s1", condition_id="email_ok"),
            ProcActionDef(id="s2", type=ActionType.FIELD_UPDATE, action_params={"field": "status", "value": "verified"}),
        ],
    )


@pytest.fixture
def flaky(engine) -> FlakyAction:
    action = FlakyAction(failures=10)
    engine.actions.register(ActionType.NONE, action)
    return action


@pytest.fixture
def action_process(engine, flaky):
    return engine.define_process(TENANT, "Notify", steps=[ProcActionDef(id="a1", type=ActionType.NONE)])


# ── Authoring ────────────────────────────────────────────────────────────


class TestDefineProcess:
    def test_registered_as_entity_type_variant(self, engine, registry, verify_process):
        assert registry.get_type_by_name(TENANT, "Verify") is verify_process
        assert engine.get_process(TENANT, "Verify") is verify_process
        assert engine.list_processes(TENANT) == [verify_process]

    def test_template_steps_have_no_history(self, verify_process):
        assert all(s.state is StepState.PENDING and s.attempts == () for s in verify_process.steps)

    def test_unknown_condition_reference(self, engine):
        with pytest.raises(ValidationError) as exc_info:
            engine.define_process(TENANT, "Bad", steps=[ProcConditionDef(id="s1", condition_id="missing")])
        assert exc_info.value.codes == {"unknown_condition"}

    def test_duplicate_step_ids(self, engine):
        with pytest.raises(ValidationError) as exc_info:
            engine.define_process(TENANT, "Bad", steps=[ProcActionDef(id="s"), ProcActionDef(id="s")])
        assert exc_info.value.codes == {"invalid_definition"}

    def test_plain_entity_type_is_not_a_process(self, engine, person_type):
        with pytest.raises(NotFoundError):
            engine.get_process(TENANT, "Person")


class TestStepEditing:
    def test_add_step_appends_and_bumps_version(self, engine, verify_process):
        updated = engine.add_step(TENANT, "Verify", ProcActionDef(id="s3", type=ActionType.NONE))
        assert [s.id for s in updated.steps] == ["s1", "s2", "s3"]
        assert updated.version == verify_process.version + 1

    def test_add_step_at_position(self, engine, verify_process):
        updated = engine.add_step(TENANT, "Verify", ProcActionDef(id="s0"), position=0)
        assert [s.id for s in updated.steps] == ["s0", "s1", "s2"]

    def test_add_duplicate_step(self, engine, verify_process):
        with pytest.raises(ValidationError):
            engine.add_step(TENANT, "Verify", ProcActionDef(id="s1"))

    def test_removed_step_skipped_by_new_events(self, engine, verify_process, person):
        engine.remove_step(TENANT, "Verify", "s1")
        event = engine.start_event(TENANT, "Verify", entities=[person.id])
        assert [s.id for s in event.steps] == ["s2"]
        assert event.steps[0].state is StepState.SCHEDULED

    def test_restore_step(self, engine, verify_process):
        engine.remove_step(TENANT, "Verify", "s1")
        restored = engine.restore_step(TENANT, "Verify", "s1")
        assert [s.id for s in restored.active_steps] == ["s1", "s2"]

    def test_remove_unknown_step(self, engine, verify_process):
        with pytest.raises(NotFoundError):
            engine.remove_step(TENANT, "Verify", "nope")

    def test_steps_frozen_while_events_live(self, engine, verify_process, person):
        event = engine.start_event(TENANT, "Verify", entities=[person.id])
        with pytest.raises(ConflictError):
            engine.add_step(TENANT, "Verify", ProcActionDef(id="s3"))
        engine.abort(TENANT, event.id)
        engine.add_step(TENANT, "Verify", ProcActionDef(id="s3"))

    def test_failed_event_still_blocks_edits(self, engine, action_process, flaky):
        flaky.retryable = False
        event = engine.start_event(TENANT, "Notify")
        engine.advance(TENANT, event.id)
        with pytest.raises(ConflictError):
            engine.remove_step(TENANT, "Notify", "a1")


# ── Starting events ──────────────────────────────────────────────────────


class TestStartEvent:
    def test_copies_steps_and_enters_first(self, engine, verify_process, person):
        event = engine.start_event(TENANT, "Verify", entities=[person.id])
        assert event.status is EventStatus.RUNNING
        assert event.cursor == 0
        assert [s.state for s in event.steps] == [StepState.WAITING, StepState.PENDING]
        assert event.next_attempt_at is not None
        assert engine.get_event(TENANT, event.id) == event

    def test_unknown_entity(self, engine, verify_process, person_type):
        with pytest.raises(NotFoundError):
            engine.start_event(TENANT, "Verify", entities=[EntityID(person_type.type_id, "ghost")])

    def test_unknown_document(self, engine, verify_process):
        with pytest.raises(NotFoundError):
            engine.start_event(TENANT, "Verify", documents=["missing"])

    def test_known_document(self, engine, verify_process, documents):
        documents.add(TENANT, DocumentDesc(id="doc-1", name="id.png"))
        assert engine.start_event(TENANT, "Verify", documents=["doc-1"]).documents == ("doc-1",)

    def test_empty_process_completes_immediately(self, engine):
        engine.define_process(TENANT, "Empty")
        event = engine.start_event(TENANT, "Empty")
        assert event.status is EventStatus.COMPLETED
        assert event.finished_at is not None

    def test_event_fields_are_validated(self, engine):
        engine.define_process(
            TENANT,
            "Ticket",
            fields=[FieldDef(id="f-priority", name="priority", type=FieldType.NUMBER, is_required=True)],
        )
        with pytest.raises(ValidationError):
            engine.start_event(TENANT, "Ticket")
        event = engine.start_event(TENANT, "Ticket", fields={"priority": 2})
        assert event.fields == {"f-priority": Value.of(2)}

    def test_template_unchanged_by_events(self, engine, verify_process, person):
        event = engine.start_event(TENANT, "Verify", entities=[person.id])
        engine.advance(TENANT, event.id)
        assert engine.get_process(TENANT, "Verify").steps == verify_process.steps


# ── Advancing ────────────────────────────────────────────────────────────


class TestEndToEnd:
    def test_person_verification(self, engine, store, verify_process, person):
        event = engine.start_event(TENANT, "Verify", entities=[person.id])

        first = engine.advance(TENANT, event.id)
        assert first.steps[0].is_ok is True
        assert first.steps[0].state is StepState.SATISFIED
        assert first.cursor == 1
        assert first.steps[1].state is StepState.SCHEDULED

        second = engine.advance(TENANT, event.id)
        assert second.steps[1].is_done is True
        assert second.status is EventStatus.COMPLETED
        assert store.get(TENANT, person.id).get("f-status") == Value.of("verified")

    def test_email_recipient_from_entity(self, engine, catalog, outbox, email_condition, person):
        engine.define_process(
            TENANT,
            "Welcome",
            steps=[
                ProcConditionDef(id="gate", condition_id="email_ok"),
                ProcActionDef(id="mail", type=ActionType.EMAIL, action_params={"to_query": "email_q", "subject": "Welcome"}),
            ],
        )
        event = engine.start_event(TENANT, "Welcome", entities=[person.id])
        engine.advance(TENANT, event.id)
        engine.advance(TENANT, event.id)
        assert [(m.to, m.subject) for m in outbox.sent] == [("a@x.com", "Welcome")]


class TestAttemptBookkeeping:
    """Every advance on a live step appends exactly one attempt."""

    def test_false_condition_keeps_waiting(self, engine, store, verify_process, catalog, person_type):
        bob = store.create_entity(TENANT, "Person", {"email": "bob@x.com"})
        event = engine.start_event(TENANT, "Verify", entities=[bob.id])

        for expected in (1, 2, 3):
            event = engine.advance(TENANT, event.id)
            step = event.steps[0]
            assert len(step.attempt_times) == expected
            assert step.state is StepState.WAITING
            assert step.is_ok is None
            assert event.cursor == 0

        assert [a.ok for a in event.steps[0].attempts] == [False, False, False]

    def test_success_counts_as_an_attempt(self, engine, store, verify_process, person_type):
        bob = store.create_entity(TENANT, "Person", {"email": "bob@x.com"})
        event = engine.start_event(TENANT, "Verify", entities=[bob.id])
        engine.advance(TENANT, event.id)
        store.update_entity(TENANT, bob.id, {"email": "a@x.com"}, expected_revision=1)

        event = engine.advance(TENANT, event.id)
        assert len(event.steps[0].attempts) == 2
        assert event.steps[0].attempts[-1].ok is True

    def test_terminal_step_never_reattempted(self, engine, verify_process, person):
        event = engine.start_event(TENANT, "Verify", entities=[person.id])
        engine.advance(TENANT, event.id)
        engine.advance(TENANT, event.id)
        done = engine.get_event(TENANT, event.id)

        again = engine.advance(TENANT, event.id)
        assert again == done
        assert [len(s.attempts) for s in again.steps] == [1, 1]

    def test_unresolved_reference_is_a_failed_attempt(self, engine, catalog, person):
        catalog.register_query(TENANT, QueryDef(id="ghost_q", source=SourceKind.ENTITY, get_field="ghost"))
        catalog.register_condition(TENANT, SingleCondition(id="ghost_ok", query_id="ghost_q", operator=Operator.EQ, value=1))
        engine.define_process(TENANT, "Ghost", steps=[ProcConditionDef(id="g", condition_id="ghost_ok")])
        event = engine.start_event(TENANT, "Ghost", entities=[person.id])

        event = engine.advance(TENANT, event.id)
        attempt = event.steps[0].last_attempt
        assert event.status is EventStatus.RUNNING
        assert event.steps[0].state is StepState.WAITING
        assert attempt.ok is False
        assert attempt.error_type == "UnresolvedReferenceError"

    def test_document_lookup_outage_is_a_failed_attempt(self, engine, catalog, documents, monkeypatch):
        documents.add(TENANT, DocumentDesc(id="doc-1", name="id.png"))
        catalog.register_query(TENANT, QueryDef(id="doc_type", source=SourceKind.DOCUMENT, get_field="file_type"))
        catalog.register_condition(TENANT, SingleCondition(id="is_png", query_id="doc_type", operator=Operator.EQ, value="png"))
        engine.define_process(TENANT, "Scan", steps=[ProcConditionDef(id="d", condition_id="is_png")])
        event = engine.start_event(TENANT, "Scan", documents=["doc-1"])

        def unreachable(tenant_id, document_id):
            raise ConnectionError("document service unreachable")

        monkeypatch.setattr(documents, "get_document", unreachable)
        event = engine.advance(TENANT, event.id)
        attempt = event.steps[0].last_attempt
        assert event.status is EventStatus.RUNNING
        assert event.steps[0].state is StepState.WAITING
        assert attempt.ok is False
        assert attempt.error_type == "UnresolvedReferenceError"
        assert "ConnectionError" in attempt.error

        monkeypatch.undo()
        event = engine.advance(TENANT, event.id)
        assert event.status is EventStatus.COMPLETED

    def test_unsupported_operator_fails_the_step(self, engine, catalog, person):
        catalog.register_query(TENANT, QueryDef(id="email_q", source=SourceKind.ENTITY, get_field="email"))
        catalog.register_condition(TENANT, SingleCondition(id="like", query_id="email_q", operator="LIKE", value="a%"))
        engine.define_process(TENANT, "Broken", steps=[ProcConditionDef(id="b", condition_id="like")])
        event = engine.start_event(TENANT, "Broken", entities=[person.id])

        event = engine.advance(TENANT, event.id)
        assert event.status is EventStatus.FAILED
        assert event.steps[0].state is StepState.FAILED
        assert event.steps[0].last_attempt.error_type == "UnsupportedOperatorError"
        with pytest.raises(StepFailedError):
            engine.advance(TENANT, event.id)


class TestActionRetries:
    def test_retries_then_fails_after_max_attempts(self, engine, action_process, flaky):
        event = engine.start_event(TENANT, "Notify")

        states = []
        for _ in range(3):
            event = engine.advance(TENANT, event.id)
            states.append(event.steps[0].state)

        assert states == [StepState.RETRYING, StepState.RETRYING, StepState.FAILED]
        assert event.status is EventStatus.FAILED
        assert len(event.steps[0].attempts) == 3
        assert event.next_attempt_at is None
        with pytest.raises(StepFailedError):
            engine.advance(TENANT, event.id)
        assert flaky.calls == 3

    def test_recovers_within_budget(self, engine, action_process, flaky):
        flaky.failures = 2
        event = engine.start_event(TENANT, "Notify")
        for _ in range(3):
            event = engine.advance(TENANT, event.id)
        assert event.status is EventStatus.COMPLETED
        assert event.steps[0].is_done
        assert [a.ok for a in event.steps[0].attempts] == [False, False, True]

    def test_non_retryable_error_fails_immediately(self, engine, action_process, flaky):
        flaky.retryable = False
        event = engine.advance(TENANT, engine.start_event(TENANT, "Notify").id)
        assert event.status is EventStatus.FAILED
        assert len(event.steps[0].attempts) == 1

    def test_field_update_on_missing_field_fails(self, engine, person):
        engine.define_process(
            TENANT,
            "Patch",
            steps=[ProcActionDef(id="p", type=ActionType.FIELD_UPDATE, action_params={"field": "nope", "value": 1})],
        )
        event = engine.advance(TENANT, engine.start_event(TENANT, "Patch", entities=[person.id]).id)
        assert event.status is EventStatus.FAILED
        assert event.steps[0].last_attempt.error_type == "ActionExecutionError"

    def test_field_update_validation_error_fails(self, engine, person):
        engine.define_process(
            TENANT,
            "Patch",
            steps=[ProcActionDef(id="p", type=ActionType.FIELD_UPDATE, action_params={"field": "age", "value": "old"})],
        )
        event = engine.advance(TENANT, engine.start_event(TENANT, "Patch", entities=[person.id]).id)
        assert event.status is EventStatus.FAILED
        assert event.steps[0].last_attempt.error_type == "ValidationError"

    def test_backoff_schedules_next_attempt(self, registry, store, conditions, settings, action_process, flaky):
        slow = ProcessEngine(
            registry,
            store,
            conditions,
            actions=build_action_registry(store),
            settings=settings,
            backoff=ConstantBackoff(delay=60),
        )
        slow.actions.register(ActionType.NONE, flaky)
        event = slow.start_event(TENANT, "Notify")
        before = utc_now()
        event = slow.advance(TENANT, event.id)

        assert event.next_attempt_at >= before + timedelta(seconds=60)
        assert slow.list_due(TENANT, now=before) == []
        assert [e.id for e in slow.list_due(TENANT, now=before + timedelta(seconds=61))] == [event.id]


# ── Intervention ─────────────────────────────────────────────────────────


class TestRetryFailedStep:
    def test_fresh_budget_and_kept_history(self, engine, action_process, flaky):
        event = engine.start_event(TENANT, "Notify")
        for _ in range(3):
            engine.advance(TENANT, event.id)

        flaky.failures = 0
        retried = engine.retry_failed_step(TENANT, event.id)
        assert retried.status is EventStatus.RUNNING
        assert retried.steps[0].state is StepState.SCHEDULED
        assert retried.steps[0].attempts_in_budget == 0

        done = engine.advance(TENANT, event.id)
        assert done.status is EventStatus.COMPLETED
        assert len(done.steps[0].attempts) == 4

    def test_only_failed_events(self, engine, action_process):
        event = engine.start_event(TENANT, "Notify")
        with pytest.raises(InvalidTransitionError):
            engine.retry_failed_step(TENANT, event.id)


class TestAbort:
    def test_abort_running(self, engine, verify_process, person):
        event = engine.start_event(TENANT, "Verify", entities=[person.id])
        aborted = engine.abort(TENANT, event.id, reason="duplicate")
        assert aborted.status is EventStatus.ABORTED
        assert aborted.abort_reason == "duplicate"
        assert aborted.steps == event.steps
        with pytest.raises(EventAbortedError):
            engine.advance(TENANT, event.id)

    def test_abort_is_idempotent(self, engine, verify_process, person):
        event = engine.start_event(TENANT, "Verify", entities=[person.id])
        first = engine.abort(TENANT, event.id)
        assert engine.abort(TENANT, event.id) == first

    def test_abort_failed_event(self, engine, action_process, flaky):
        flaky.retryable = False
        event = engine.start_event(TENANT, "Notify")
        engine.advance(TENANT, event.id)
        assert engine.abort(TENANT, event.id).status is EventStatus.ABORTED

    def test_completed_event_cannot_abort(self, engine, verify_process, person):
        event = engine.start_event(TENANT, "Verify", entities=[person.id])
        engine.advance(TENANT, event.id)
        engine.advance(TENANT, event.id)
        with pytest.raises(InvalidTransitionError):
            engine.abort(TENANT, event.id)

    def test_unknown_event(self, engine):
        with pytest.raises(NotFoundError):
            engine.abort(TENANT, "ghost")


# ── Event fields and listing ─────────────────────────────────────────────


class TestEventFields:
    @pytest.fixture
    def ticket(self, engine, catalog):
        catalog.register_query(TENANT, QueryDef(id="prio_q", source=SourceKind.EVENT, get_field="priority"))
        catalog.register_condition(
            TENANT, SingleCondition(id="urgent", query_id="prio_q", operator=Operator.GTE, value=3)
        )
        return engine.define_process(
            TENANT,
            "Ticket",
            fields=[FieldDef(id="f-priority", name="priority", type=FieldType.NUMBER)],
            steps=[ProcConditionDef(id="gate", condition_id="urgent")],
        )

    def test_condition_reads_event_fields(self, engine, ticket):
        event = engine.start_event(TENANT, "Ticket", fields={"priority": 1})
        assert engine.advance(TENANT, event.id).steps[0].state is StepState.WAITING

        engine.update_event_fields(TENANT, event.id, {"priority": 5})
        assert engine.advance(TENANT, event.id).status is EventStatus.COMPLETED

    def test_terminal_event_fields_are_read_only(self, engine, ticket):
        event = engine.start_event(TENANT, "Ticket", fields={"priority": 1})
        engine.abort(TENANT, event.id)
        with pytest.raises(ProcessError):
            engine.update_event_fields(TENANT, event.id, {"priority": 5})


class TestListing:
    def test_list_events_by_process_and_status(self, engine, verify_process, action_process, person):
        running = engine.start_event(TENANT, "Verify", entities=[person.id])
        aborted = engine.start_event(TENANT, "Notify")
        engine.abort(TENANT, aborted.id)

        assert [e.id for e in engine.list_events(TENANT, "Verify")] == [running.id]
        assert [e.id for e in engine.list_events(TENANT, status=EventStatus.ABORTED)] == [aborted.id]
        assert [e.id for e in engine.list_due(TENANT)] == [running.id]


# ── Concurrency ──────────────────────────────────────────────────────────


class TestMutualExclusion:
    def test_busy_event_rejected_without_wait(self, registry, store, conditions, settings, verify_process, person):
        locks = KeyedLockArena("events")
        engine = ProcessEngine(registry, store, conditions, settings=settings, locks=locks)
        event = engine.start_event(TENANT, "Verify", entities=[person.id])

        with locks.hold(("event", TENANT, event.id), holder="other"):
            with pytest.raises(ConflictError):
                engine.advance(TENANT, event.id, wait=False)
        assert engine.get_event(TENANT, event.id).steps[0].attempts == ()

    def test_concurrent_advances_execute_action_once(self, engine, flaky):
        flaky.failures = 0
        engine.define_process(TENANT, "Once", steps=[ProcActionDef(id="a", type=ActionType.NONE)])
        event = engine.start_event(TENANT, "Once")
        barrier = threading.Barrier(5)
        errors = []

        def advance():
            barrier.wait()
            try:
                engine.advance(TENANT, event.id)
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=advance) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        final = engine.get_event(TENANT, event.id)
        assert errors == []
        assert flaky.calls == 1
        assert len(final.steps[0].attempts) == 1
        assert final.status is EventStatus.COMPLETED


@pytest.mark.integration
class TestPersistence:
    def test_attempt_history_survives_restart(self, registry, store, conditions, settings, action_process, flaky, sqlite_path):
        repo = SQLiteRecordRepository(sqlite_path)
        first = ProcessEngine(registry, store, conditions, repository=repo, settings=settings)
        first.actions.register(ActionType.NONE, flaky)
        event = first.start_event(TENANT, "Notify")
        first.advance(TENANT, event.id)
        repo.close()

        reopened = SQLiteRecordRepository(sqlite_path)
        second = ProcessEngine(registry, store, conditions, repository=reopened, settings=settings)
        loaded = second.get_event(TENANT, event.id)
        reopened.close()
        assert loaded.revision == 2
        assert loaded.steps[0].state is StepState.RETRYING
        assert len(loaded.steps[0].attempts) == 1
