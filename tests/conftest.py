"""
Shared pytest fixtures and configuration for procspine tests.

This module provides:
- Settings/log-context cleanup for test isolation
- A fully wired stack (registry, store, catalog, condition and process engines)
- A ``Person`` entity type and a sample person record

Usage:
    Fixtures are auto-discovered by pytest. Request them by name:

    def test_something(engine, person):
        ...
"""

from collections.abc import Generator
from pathlib import Path

import pytest

from procspine.conditions.catalog import ConditionCatalog
from procspine.conditions.engine import ConditionEngine
from procspine.conditions.models import Operator, QueryDef, SingleCondition, SourceKind
from procspine.conditions.sources import InMemoryDocumentLookup
from procspine.core.logging import clear_context
from procspine.core.settings import ProcSpineSettings, clear_settings_cache
from procspine.entities.models import EntityRecord
from procspine.entities.store import EntityStore
from procspine.process.actions import InMemoryOutbox, build_action_registry
from procspine.process.engine import ProcessEngine
from procspine.schema.fields import EntityTypeDef, FieldDef, FieldType
from procspine.schema.registry import SchemaRegistry
from procspine.schema.validators import ValidatorKind, ValidatorSpec

TENANT = "t1"


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests that have no explicit marker as unit tests."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Isolation Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def clean_settings() -> Generator[None, None, None]:
    """Drop cached settings before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture(autouse=True)
def clean_log_context() -> Generator[None, None, None]:
    """Make sure no bound log context leaks between tests."""
    clear_context()
    yield
    clear_context()


# =============================================================================
# Wired Stack
# =============================================================================


@pytest.fixture
def settings() -> ProcSpineSettings:
    """Settings with zero backoff so retried steps are due immediately."""
    return ProcSpineSettings(
        max_action_attempts=3,
        backoff_base_seconds=0,
        backoff_max_seconds=0,
        worker_poll_interval=0.05,
        worker_max_workers=2,
    )


@pytest.fixture
def registry() -> SchemaRegistry:
    return SchemaRegistry()


@pytest.fixture
def store(registry: SchemaRegistry) -> EntityStore:
    return EntityStore(registry)


@pytest.fixture
def catalog() -> ConditionCatalog:
    return ConditionCatalog()


@pytest.fixture
def documents() -> InMemoryDocumentLookup:
    return InMemoryDocumentLookup()


@pytest.fixture
def conditions(
    store: EntityStore,
    catalog: ConditionCatalog,
    documents: InMemoryDocumentLookup,
) -> ConditionEngine:
    return ConditionEngine(store, catalog, documents)


@pytest.fixture
def outbox() -> InMemoryOutbox:
    return InMemoryOutbox()


@pytest.fixture
def engine(
    registry: SchemaRegistry,
    store: EntityStore,
    conditions: ConditionEngine,
    outbox: InMemoryOutbox,
    settings: ProcSpineSettings,
) -> ProcessEngine:
    return ProcessEngine(
        registry,
        store,
        conditions,
        actions=build_action_registry(store, outbox),
        settings=settings,
    )


# =============================================================================
# Sample Data
# =============================================================================


@pytest.fixture
def person_type(registry: SchemaRegistry) -> EntityTypeDef:
    """``Person``: email (required, validated), age, status, tags."""
    return registry.create_type(
        TENANT,
        "Person",
        [
            FieldDef(
                id="f-email",
                name="email",
                type=FieldType.STRING,
                is_required=True,
                validator=ValidatorSpec(ValidatorKind.EMAIL),
            ),
            FieldDef(
                id="f-age",
                name="age",
                type=FieldType.NUMBER,
                validator=ValidatorSpec(ValidatorKind.RANGE, {"min": 0, "max": 130}),
            ),
            FieldDef(id="f-status", name="status", type=FieldType.STRING),
            FieldDef(id="f-tags", name="tags", type=FieldType.JSON),
        ],
    )


@pytest.fixture
def person(store: EntityStore, person_type: EntityTypeDef) -> EntityRecord:
    return store.create_entity(
        TENANT,
        "Person",
        {"email": "a@x.com", "age": 30, "tags": ["vip", "beta"]},
    )


@pytest.fixture
def email_condition(catalog: ConditionCatalog) -> SingleCondition:
    """``email_ok``: Entity.email EQ "a@x.com"."""
    catalog.register_query(TENANT, QueryDef(id="email_q", source=SourceKind.ENTITY, get_field="email"))
    return catalog.register_condition(
        TENANT,
        SingleCondition(id="email_ok", query_id="email_q", operator=Operator.EQ, value="a@x.com"),
    )


@pytest.fixture
def sqlite_path(tmp_path: Path) -> Path:
    return tmp_path / "procspine.db"
