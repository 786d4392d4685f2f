"""Tenant-scoped catalog of query definitions and condition trees.

Process steps reference condition trees by id; leaves reference queries
by id. Both are authored once and read many times, so the catalog is a
plain registry guarded by one lock, in the style of the feature flag
registry.
"""

from __future__ import annotations

import threading

from procspine.conditions.models import ConditionNode, Operator, QueryDef, iter_leaves
from procspine.conditions.operators import pattern_problem
from procspine.core.errors import NotFoundError, ValidationError, Violation
from procspine.core.logging import get_logger

logger = get_logger(__name__)


class ConditionCatalog:
    """Registry of ``QueryDef`` and condition trees, keyed by (tenant, id)."""

    def __init__(self):
        self._queries: dict[tuple[str, str], QueryDef] = {}
        self._conditions: dict[tuple[str, str], ConditionNode] = {}
        self._lock = threading.RLock()

    # ── Queries ──────────────────────────────────────────────────

    def register_query(self, tenant_id: str, query: QueryDef, replace: bool = False) -> QueryDef:
        with self._lock:
            if not replace and (tenant_id, query.id) in self._queries:
                raise ValidationError(
                    f"Query already registered: {query.id}",
                    violations=[Violation("", "duplicate_id", f"query id {query.id!r} is taken")],
                ).with_context(tenant_id=tenant_id)
            self._queries[(tenant_id, query.id)] = query
        logger.debug("query_registered", tenant_id=tenant_id, query_id=query.id, source=query.source.value)
        return query

    def get_query(self, tenant_id: str, query_id: str) -> QueryDef:
        with self._lock:
            query = self._queries.get((tenant_id, query_id))
        if query is None:
            raise NotFoundError("query", query_id).with_context(tenant_id=tenant_id)
        return query

    def find_query(self, tenant_id: str, query_id: str) -> QueryDef | None:
        with self._lock:
            return self._queries.get((tenant_id, query_id))

    def list_queries(self, tenant_id: str) -> list[QueryDef]:
        with self._lock:
            return [q for (tenant, _), q in self._queries.items() if tenant == tenant_id]

    # ── Condition trees ──────────────────────────────────────────

    def register_condition(
        self,
        tenant_id: str,
        condition: ConditionNode,
        replace: bool = False,
    ) -> ConditionNode:
        """Register a tree under its root id.

        Leaf query references and MATCHES patterns are checked here so that
        a typo is reported when the tree is authored rather than on every
        evaluation.

        Raises:
            ValidationError: Duplicate id, leaves naming unknown queries, or
                MATCHES leaves whose pattern does not compile
        """
        with self._lock:
            if not replace and (tenant_id, condition.id) in self._conditions:
                raise ValidationError(
                    f"Condition already registered: {condition.id}",
                    violations=[Violation("", "duplicate_id", f"condition id {condition.id!r} is taken")],
                ).with_context(tenant_id=tenant_id)
            violations = [
                Violation(leaf.id, "unknown_query", f"leaf {leaf.id!r} references unknown query {leaf.query_id!r}")
                for leaf in iter_leaves(condition)
                if (tenant_id, leaf.query_id) not in self._queries
            ]
            violations += leaf_pattern_violations(condition)
            if violations:
                raise ValidationError.from_violations(violations).with_context(tenant_id=tenant_id)
            self._conditions[(tenant_id, condition.id)] = condition
        logger.debug("condition_registered", tenant_id=tenant_id, condition_id=condition.id)
        return condition

    def get_condition(self, tenant_id: str, condition_id: str) -> ConditionNode:
        with self._lock:
            condition = self._conditions.get((tenant_id, condition_id))
        if condition is None:
            raise NotFoundError("condition", condition_id).with_context(tenant_id=tenant_id)
        return condition

    def has_condition(self, tenant_id: str, condition_id: str) -> bool:
        with self._lock:
            return (tenant_id, condition_id) in self._conditions

    def list_conditions(self, tenant_id: str) -> list[ConditionNode]:
        with self._lock:
            return [c for (tenant, _), c in self._conditions.items() if tenant == tenant_id]


def leaf_pattern_violations(condition: ConditionNode) -> list[Violation]:
    """One ``invalid_pattern`` violation per MATCHES leaf that cannot compile."""
    violations = []
    for leaf in iter_leaves(condition):
        if leaf.operator is not Operator.MATCHES:
            continue
        problem = pattern_problem(leaf.value)
        if problem is not None:
            violations.append(Violation(leaf.id, "invalid_pattern", f"leaf {leaf.id!r}: {problem}"))
    return violations


__all__ = ["ConditionCatalog", "leaf_pattern_violations"]
