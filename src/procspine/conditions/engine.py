"""
Condition Evaluation Engine — resolve queries and evaluate condition trees.

Evaluation is a pure function of the tree and the data it reads. Nothing
is written; the only state is a per-pass memo so that a query shared by
sibling leaves is resolved once and every leaf sees the same value.

Manifesto:
    - **Errors propagate:** an unresolvable reference raises, it is never coerced to False
    - **Short-circuit:** ``And`` stops at the first False, ``Or`` at the first True
    - **Exhaustive dispatch:** one ``match`` over the closed node set
    - **Consistent pass:** each query and each entity is read at most once per pass

Architecture:
    ::

        ConditionEngine.evaluate(node, scope)
            │
            └─ EvaluationPass (memo: query_id → Value, EntityID → record)
                 │
                 ├─ SingleCondition → Operator.parse → resolve(query) → apply_operator
                 ├─ AndCondition    → left and right
                 ├─ OrCondition     → left or right
                 └─ NotCondition    → not child

        resolve(query):
            Entity   → bound entities in order, creator filter, first type defining the field
            Event    → event field values, then id / process_id / started_at
            Document → bound documents in order, creator filter (uploader),
                       built-ins then metadata

Examples:
    >>> engine = ConditionEngine(store, catalog)
    >>> scope = EvaluationScope(tenant_id="t1", entities=(person.id,))
    >>> engine.evaluate_by_id("t1", "email_matches", scope)
    True

Tags:
    conditions, evaluation, short-circuit, memoization, procspine
"""

from __future__ import annotations

from procspine.conditions.catalog import ConditionCatalog
from procspine.conditions.models import (
    AndCondition,
    ConditionNode,
    NotCondition,
    Operator,
    OrCondition,
    QueryDef,
    SingleCondition,
    SourceKind,
)
from procspine.conditions.operators import apply_operator
from procspine.conditions.sources import DocumentLookup, EvaluationScope
from procspine.core.errors import NotFoundError, UnresolvedReferenceError
from procspine.core.logging import get_logger
from procspine.core.values import Value
from procspine.entities.models import EntityID, EntityRecord
from procspine.entities.store import EntityStore

logger = get_logger(__name__)


class ConditionEngine:
    """Evaluates condition trees against an :class:`EvaluationScope`."""

    def __init__(
        self,
        store: EntityStore,
        catalog: ConditionCatalog | None = None,
        documents: DocumentLookup | None = None,
    ):
        self.store = store
        self.catalog = catalog or ConditionCatalog()
        self.documents = documents

    def evaluate(self, node: ConditionNode, scope: EvaluationScope) -> bool:
        """Evaluate one tree in a fresh pass.

        Raises:
            UnresolvedReferenceError: A reached leaf could not be resolved
            TypeMismatchError: A reached leaf could not compare its operands
            UnsupportedOperatorError: A reached leaf names an unknown operator
        """
        result = EvaluationPass(self, scope).evaluate(node)
        logger.debug("condition_evaluated", condition_id=node.id, result=result, **scope.describe())
        return result

    def evaluate_by_id(self, tenant_id: str, condition_id: str, scope: EvaluationScope) -> bool:
        return self.evaluate(self.catalog.get_condition(tenant_id, condition_id), scope)

    def resolve(self, query: QueryDef | str, scope: EvaluationScope) -> Value:
        """Resolve a single query (by definition or id) in its own pass."""
        return EvaluationPass(self, scope).resolve(query)


class EvaluationPass:
    """One evaluation pass; memoizes query resolutions and entity reads."""

    def __init__(self, engine: ConditionEngine, scope: EvaluationScope):
        self.engine = engine
        self.scope = scope
        self._values: dict[str, Value] = {}
        self._records: dict[EntityID, EntityRecord] = {}

    def evaluate(self, node: ConditionNode) -> bool:
        match node:
            case SingleCondition():
                operator = Operator.parse(node.operator)
                subject = self.resolve(node.query_id)
                return apply_operator(operator, subject, node.value)
            case AndCondition(left=left, right=right):
                return self.evaluate(left) and self.evaluate(right)
            case OrCondition(left=left, right=right):
                return self.evaluate(left) or self.evaluate(right)
            case NotCondition(child=child):
                return not self.evaluate(child)
        raise TypeError(f"Not a condition node: {type(node).__name__}")

    def resolve(self, query: QueryDef | str) -> Value:
        if isinstance(query, str):
            found = self.engine.catalog.find_query(self.scope.tenant_id, query)
            if found is None:
                raise UnresolvedReferenceError(query, "unknown query").with_context(
                    tenant_id=self.scope.tenant_id
                )
            query = found
        if query.id not in self._values:
            self._values[query.id] = self._resolve(query)
        return self._values[query.id]

    # ── Per-source resolution ────────────────────────────────────

    def _resolve(self, query: QueryDef) -> Value:
        match query.source:
            case SourceKind.ENTITY:
                return self._from_entities(query)
            case SourceKind.EVENT:
                return self._from_event(query)
            case SourceKind.DOCUMENT:
                return self._from_documents(query)
        raise AssertionError(f"unhandled source {query.source!r}")

    def _from_entities(self, query: QueryDef) -> Value:
        tenant_id = self.scope.tenant_id
        registry = self.engine.store.registry
        if not self.scope.entities:
            raise self._unresolved(query, "no entities bound")
        for entity_id in self.scope.entities:
            record = self._record(entity_id)
            if query.where_created_by is not None and record.created_by != query.where_created_by:
                continue
            field_def = registry.get_type(tenant_id, entity_id.type_id).find_field(query.get_field)
            if field_def is None or not field_def.is_active:
                continue
            return record.fields.get(field_def.id, Value.null())
        raise self._unresolved(query, f"no bound entity defines field {query.get_field!r}")

    def _from_event(self, query: QueryDef) -> Value:
        event = self.scope.event
        if event is None:
            raise self._unresolved(query, "no event in scope")
        if query.where_created_by is not None and event.started_by != query.where_created_by:
            raise self._unresolved(query, "event was not started by the requested creator")
        value = event.attribute(query.get_field)
        if value is None:
            raise self._unresolved(query, f"event has no field {query.get_field!r}")
        return value

    def _from_documents(self, query: QueryDef) -> Value:
        lookup = self.engine.documents
        if lookup is None or not self.scope.documents:
            raise self._unresolved(query, "no documents bound")
        for document_id in self.scope.documents:
            try:
                document = lookup.get_document(self.scope.tenant_id, document_id)
            except NotFoundError as exc:
                raise self._unresolved(query, f"document {document_id!r} not found") from exc
            except Exception as exc:
                raise self._unresolved(
                    query, f"document {document_id!r} lookup failed: {type(exc).__name__}: {exc}"
                ) from exc
            if query.where_created_by is not None and document.uploader_id != query.where_created_by:
                continue
            value = document.attribute(query.get_field)
            if value is not None:
                return value
        raise self._unresolved(query, f"no bound document has {query.get_field!r}")

    def _record(self, entity_id: EntityID) -> EntityRecord:
        if entity_id not in self._records:
            try:
                self._records[entity_id] = self.engine.store.get(self.scope.tenant_id, entity_id)
            except NotFoundError as exc:
                raise UnresolvedReferenceError(str(entity_id), "bound entity not found").with_context(
                    tenant_id=self.scope.tenant_id
                ) from exc
        return self._records[entity_id]

    def _unresolved(self, query: QueryDef, reason: str) -> UnresolvedReferenceError:
        return UnresolvedReferenceError(query.id, reason).with_context(
            tenant_id=self.scope.tenant_id, source=query.source.value
        )


__all__ = ["ConditionEngine", "EvaluationPass"]
