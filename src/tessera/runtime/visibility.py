"""
Column visibility filter.

Strips hidden columns from serialized records: the engine-wide base set, the
entity's static ``additional_hidden_columns`` and whatever its policy hides
for the current caller. Policy calls are cached per entity type for the
lifetime of one request.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tessera.runtime.access_control import PolicyRegistry, RequestContext
    from tessera.runtime.query_builder import QueryPlan
    from tessera.runtime.registry import EntityRegistry
    from tessera.specs.entity import EntitySpec


class ColumnVisibility:
    """
    Request-scoped serializer.

    Example:
        visibility = ColumnVisibility(ctx, registry, policies)
        body = [visibility.apply(posts, row, plan) for row in rows]
    """

    def __init__(
        self,
        ctx: RequestContext,
        registry: EntityRegistry,
        policies: PolicyRegistry,
    ):
        self.ctx = ctx
        self.registry = registry
        self.policies = policies
        self._hidden: dict[str, frozenset[str]] = {}

    def hidden_for(self, entity: EntitySpec) -> frozenset[str]:
        """Hidden columns for one entity type, computed once per request."""
        cached = self._hidden.get(entity.slug)
        if cached is None:
            cached = frozenset(
                self.registry.base_hidden_columns
                | set(entity.additional_hidden_columns)
                | self.policies.get(entity.slug).hidden_columns(self.ctx)
            )
            self._hidden[entity.slug] = cached
        return cached

    def apply(
        self,
        entity: EntitySpec,
        record: dict[str, Any],
        plan: QueryPlan | None = None,
    ) -> dict[str, Any]:
        """
        Apply field selection then hidden columns, recursing into included relations.

        Relation and aggregate keys are not subject to field selection; each
        included record is filtered as its own entity type.
        """
        hidden = self.hidden_for(entity)
        selected = plan.fields_for(entity.slug) if plan is not None else None
        columns = set(entity.column_names)

        result: dict[str, Any] = {}
        for key, value in record.items():
            if key in hidden:
                continue
            if key in columns:
                if selected is None or key in selected:
                    result[key] = value
                continue

            relation = self.registry.relation(entity.slug, key)
            if relation is None:
                result[key] = value
                continue
            target = self.registry.lookup(relation.to_entity)
            if isinstance(value, list):
                result[key] = [self.apply(target, item, plan) for item in value]
            elif isinstance(value, dict):
                result[key] = self.apply(target, value, plan)
            else:
                result[key] = value
        return result

    def apply_many(
        self,
        entity: EntitySpec,
        records: list[dict[str, Any]],
        plan: QueryPlan | None = None,
    ) -> list[dict[str, Any]]:
        return [self.apply(entity, record, plan) for record in records]
