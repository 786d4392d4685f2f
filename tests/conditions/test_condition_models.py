"""Tests for procspine.conditions.models and the condition catalog."""

import pytest

from procspine.conditions.catalog import ConditionCatalog
from procspine.conditions.models import (
    AndCondition,
    NotCondition,
    Operator,
    OrCondition,
    QueryDef,
    SingleCondition,
    SourceKind,
    condition_from_dict,
    iter_leaves,
)
from procspine.core.errors import NotFoundError, UnsupportedOperatorError, ValidationError
from procspine.core.values import Value
from procspine.entities.models import EntityID

TENANT = "t1"


# ── Models ───────────────────────────────────────────────────────────────


class TestOperatorParse:
    def test_known(self):
        assert Operator.parse("MATCHES") is Operator.MATCHES

    def test_unknown(self):
        with pytest.raises(UnsupportedOperatorError):
            Operator.parse("LIKE")


class TestSingleCondition:
    def test_known_operator_string_is_coerced(self):
        leaf = SingleCondition(query_id="q", operator="EQ", value="x")
        assert leaf.operator is Operator.EQ
        assert leaf.value == Value.of("x")

    def test_unknown_operator_kept_for_evaluation_time(self):
        leaf = SingleCondition(query_id="q", operator="LIKE", value="x")
        assert leaf.operator == "LIKE"
        assert leaf.to_dict()["operator"] == "LIKE"


class TestTreeSerialization:
    def test_tree_rebuilds_from_dict(self):
        tree = AndCondition(
            id="root",
            left=SingleCondition(id="l1", query_id="q1", operator=Operator.GT, value=3),
            right=OrCondition(
                id="or",
                left=NotCondition(id="not", child=SingleCondition(id="l2", query_id="q2", operator="IN", value=[1, 2])),
                right=SingleCondition(id="l3", query_id="q3", operator="MATCHES", value="^a"),
            ),
        )
        assert condition_from_dict(tree.to_dict()) == tree

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            condition_from_dict({"kind": "xor", "id": "x"})

    def test_iter_leaves_left_to_right(self):
        tree = OrCondition(
            left=SingleCondition(id="a", query_id="q", operator="EQ"),
            right=NotCondition(child=SingleCondition(id="b", query_id="q", operator="EQ")),
        )
        assert [leaf.id for leaf in iter_leaves(tree)] == ["a", "b"]


class TestQueryDef:
    def test_wire_uses_from_key(self):
        query = QueryDef(
            id="q1",
            source=SourceKind.ENTITY,
            get_field="email",
            where_created_by=EntityID("User", "u-1"),
        )
        data = query.to_dict()
        assert data["from"] == "Entity"
        assert QueryDef.from_dict(data) == query

    def test_source_coerced(self):
        assert QueryDef(id="q", source="Document", get_field="name").source is SourceKind.DOCUMENT


# ── Catalog ──────────────────────────────────────────────────────────────


@pytest.fixture
def query() -> QueryDef:
    return QueryDef(id="email_q", source=SourceKind.ENTITY, get_field="email")


class TestCatalog:
    def test_register_and_get(self, catalog: ConditionCatalog, query):
        catalog.register_query(TENANT, query)
        leaf = catalog.register_condition(TENANT, SingleCondition(id="c1", query_id="email_q", operator="EQ"))
        assert catalog.get_query(TENANT, "email_q") == query
        assert catalog.get_condition(TENANT, "c1") == leaf
        assert catalog.has_condition(TENANT, "c1")
        assert catalog.list_queries(TENANT) == [query]
        assert catalog.list_conditions(TENANT) == [leaf]

    def test_duplicate_ids(self, catalog, query):
        catalog.register_query(TENANT, query)
        with pytest.raises(ValidationError):
            catalog.register_query(TENANT, query)
        catalog.register_query(TENANT, query, replace=True)

    def test_leaves_must_reference_known_queries(self, catalog, query):
        catalog.register_query(TENANT, query)
        tree = AndCondition(
            left=SingleCondition(id="ok", query_id="email_q", operator="EQ"),
            right=SingleCondition(id="bad", query_id="missing_q", operator="EQ"),
        )
        with pytest.raises(ValidationError) as exc_info:
            catalog.register_condition(TENANT, tree)
        assert [v.field_id for v in exc_info.value.violations] == ["bad"]
        assert exc_info.value.codes == {"unknown_query"}

    def test_broken_matches_pattern_rejected_at_registration(self, catalog, query):
        catalog.register_query(TENANT, query)
        tree = OrCondition(
            left=SingleCondition(id="ok", query_id="email_q", operator=Operator.MATCHES, value=r"@x\.com$"),
            right=NotCondition(
                child=SingleCondition(id="bad", query_id="email_q", operator=Operator.MATCHES, value="(")
            ),
        )
        with pytest.raises(ValidationError) as exc_info:
            catalog.register_condition(TENANT, tree)
        assert [v.field_id for v in exc_info.value.violations] == ["bad"]
        assert exc_info.value.codes == {"invalid_pattern"}
        assert not catalog.has_condition(TENANT, tree.id)

    def test_non_string_matches_pattern_rejected(self, catalog, query):
        catalog.register_query(TENANT, query)
        with pytest.raises(ValidationError) as exc_info:
            catalog.register_condition(
                TENANT, SingleCondition(id="num", query_id="email_q", operator=Operator.MATCHES, value=5)
            )
        assert exc_info.value.codes == {"invalid_pattern"}

    def test_tenant_scoped(self, catalog, query):
        catalog.register_query(TENANT, query)
        with pytest.raises(NotFoundError):
            catalog.get_query("t2", "email_q")
        with pytest.raises(NotFoundError):
            catalog.get_condition(TENANT, "nope")
