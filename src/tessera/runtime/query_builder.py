"""
Query composition for list endpoints.

Request parameters (``filter[field]``, ``sort``, ``include``, ``fields[slug]``,
``search``) are composed into a QueryPlan, checked against the entity's
whitelists. Tokens that are not whitelisted are ignored rather than rejected.
SelectBuilder then renders a plan to parameterized SQL.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from tessera.specs.entity import ColumnType, EntitySpec

if TYPE_CHECKING:
    from tessera.runtime.registry import EntityRegistry, RelationInfo

# Valid SQL identifier pattern (alphanumeric and underscore, not starting with digit)
_VALID_IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
_BRACKET_KEY = re.compile(r"^(\w+)\[([^\]]*)\]$")

AGGREGATE_SUFFIXES: dict[str, str] = {"Count": "count", "Exists": "exists"}

TrashScope = Literal["active", "trashed", "any"]


def validate_sql_identifier(name: str, context: str = "identifier") -> str:
    """
    Validate that a string is a safe SQL identifier.

    Raises:
        ValueError: If the name contains invalid characters
    """
    if not name:
        raise ValueError(f"SQL {context} cannot be empty")
    if not _VALID_IDENTIFIER_PATTERN.match(name):
        raise ValueError(
            f"Invalid SQL {context} '{name}': must contain only letters, digits, "
            "and underscores, and cannot start with a digit"
        )
    return name


def quote_identifier(name: str) -> str:
    """Validate and double-quote an identifier."""
    return f'"{validate_sql_identifier(name)}"'


# =============================================================================
# Request Parameter Parsing
# =============================================================================


def parse_query_params(items: Iterable[tuple[str, str]]) -> dict[str, Any]:
    """
    Fold flat query pairs into nested parameters.

    Examples:
        [("filter[title]", "A,B"), ("sort", "-id")]
            -> {"filter": {"title": "A,B"}, "sort": "-id"}
    """
    params: dict[str, Any] = {}
    for key, value in items:
        match = _BRACKET_KEY.match(key)
        if match:
            group = params.setdefault(match.group(1), {})
            if isinstance(group, dict):
                group[match.group(2)] = value
        else:
            params[key] = value
    return params


def split_csv(raw: Any) -> list[str]:
    """Split a comma list, dropping blanks."""
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(v).strip() for v in raw if str(v).strip()]
    return [part.strip() for part in str(raw).split(",") if part.strip()]


def split_aggregate(segment: str) -> tuple[str, str | None]:
    """``commentsCount`` -> (``comments``, ``count``)."""
    for suffix, aggregate in AGGREGATE_SUFFIXES.items():
        if segment.endswith(suffix) and len(segment) > len(suffix):
            return segment[: -len(suffix)], aggregate
    return segment, None


# =============================================================================
# Plan Types
# =============================================================================


@dataclass(frozen=True)
class FilterCondition:
    """Equality on one column; several values OR together."""

    field: str
    values: tuple[Any, ...]

    def to_sql(self, table_alias: str | None = None) -> tuple[str, list[Any]]:
        column = _column_ref(self.field, table_alias)
        if len(self.values) == 1:
            return f"{column} = ?", [self.values[0]]
        placeholders = ", ".join("?" for _ in self.values)
        return f"{column} IN ({placeholders})", list(self.values)


@dataclass(frozen=True)
class SortField:
    """A single sort key."""

    field: str
    descending: bool = False

    @classmethod
    def parse(cls, sort_str: str) -> SortField:
        """
        Examples:
            - "created_at" -> SortField(field="created_at", descending=False)
            - "-created_at" -> SortField(field="created_at", descending=True)
        """
        sort_str = sort_str.strip()
        descending = sort_str.startswith("-")
        return cls(field=sort_str.lstrip("-").strip(), descending=descending)

    def to_sql(self, table_alias: str | None = None) -> str:
        direction = "DESC" if self.descending else "ASC"
        return f"{_column_ref(self.field, table_alias)} {direction}"


@dataclass(frozen=True)
class SearchClause:
    """Case-insensitive substring match OR'd across columns."""

    term: str
    columns: tuple[str, ...]


@dataclass(frozen=True)
class IncludePath:
    """
    A resolved include path.

    ``raw`` is the string as requested; ``relations`` is the hop chain with the
    aggregate suffix already stripped from the last segment.
    """

    raw: str
    relations: tuple[RelationInfo, ...]
    aggregate: str | None = None

    @property
    def segments(self) -> tuple[str, ...]:
        return tuple(r.name for r in self.relations)

    @property
    def output_key(self) -> str:
        last = self.relations[-1].name
        return f"{last}_{self.aggregate}" if self.aggregate else last


@dataclass(frozen=True)
class QueryPlan:
    """Everything a list query needs, already whitelisted."""

    entity: str
    filters: tuple[FilterCondition, ...] = ()
    sorts: tuple[SortField, ...] = ()
    includes: tuple[IncludePath, ...] = ()
    fields: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    search: SearchClause | None = None

    def fields_for(self, slug: str) -> tuple[str, ...] | None:
        return self.fields.get(slug)


def resolve_include_path(
    registry: EntityRegistry, entity: EntitySpec, raw: str
) -> IncludePath | None:
    """
    Resolve an include string against ``allowed_includes`` at every hop.

    Returns None when any segment is not an allowed relation of the entity it
    is reached from.
    """
    segments = raw.strip().split(".")
    if not raw.strip() or any(not s for s in segments):
        return None

    chain: list[RelationInfo] = []
    aggregate: str | None = None
    current = entity
    for position, segment in enumerate(segments):
        name = segment
        if position == len(segments) - 1 and current.get_relation(segment) is None:
            name, aggregate = split_aggregate(segment)
        if name not in current.allowed_includes:
            return None
        info = registry.relation(current.slug, name)
        if info is None:
            return None
        chain.append(info)
        current = registry.lookup(info.to_entity)
    return IncludePath(raw=raw.strip(), relations=tuple(chain), aggregate=aggregate)


# =============================================================================
# Composer
# =============================================================================


def _coerce(entity: EntitySpec, column: str, value: str) -> Any:
    spec = entity.get_column(column)
    if column == "id" or (spec is not None and spec.type == ColumnType.INTEGER):
        try:
            return int(value)
        except ValueError:
            return value
    if spec is not None and spec.type == ColumnType.BOOLEAN:
        lowered = value.lower()
        if lowered in ("true", "1"):
            return 1
        if lowered in ("false", "0"):
            return 0
    return value


class QueryComposer:
    """
    Turns request parameters into a QueryPlan.

    Example:
        plan = QueryComposer(registry).build(posts, {"filter": {"title": "A,B"}, "sort": "-id"})
    """

    def __init__(self, registry: EntityRegistry):
        self.registry = registry

    def build(
        self,
        entity: EntitySpec,
        params: Mapping[str, Any],
        includes: tuple[IncludePath, ...] | None = None,
    ) -> QueryPlan:
        """
        Compose a plan. Pass ``includes`` when they were already resolved
        (and authorized) by the Gatekeeper.
        """
        if includes is None:
            includes = self.includes(entity, params.get("include"))
        return QueryPlan(
            entity=entity.slug,
            filters=self._filters(entity, params.get("filter")),
            sorts=self._sorts(entity, params.get("sort")),
            includes=includes,
            fields=self._fields(params.get("fields")),
            search=self._search(entity, params.get("search")),
        )

    def _filters(self, entity: EntitySpec, raw: Any) -> tuple[FilterCondition, ...]:
        if not isinstance(raw, Mapping):
            return ()
        conditions = []
        for name, value in raw.items():
            if name not in entity.allowed_filters:
                continue
            values = split_csv(value)
            if values:
                coerced = tuple(_coerce(entity, name, v) for v in values)
                conditions.append(FilterCondition(name, coerced))
        return tuple(conditions)

    def _sorts(self, entity: EntitySpec, raw: Any) -> tuple[SortField, ...]:
        requested = [SortField.parse(s) for s in split_csv(raw)]
        sorts = tuple(s for s in requested if s.field in entity.allowed_sorts)
        if sorts:
            return sorts
        return tuple(SortField.parse(s) for s in split_csv(entity.default_sort))

    def includes(self, entity: EntitySpec, raw: Any) -> tuple[IncludePath, ...]:
        """Resolve every allowed include path, keeping request order."""
        paths: list[IncludePath] = []
        seen: set[str] = set()
        for token in split_csv(raw):
            path = resolve_include_path(self.registry, entity, token)
            if path is not None and path.raw not in seen:
                seen.add(path.raw)
                paths.append(path)
        return tuple(paths)

    def _fields(self, raw: Any) -> dict[str, tuple[str, ...]]:
        if not isinstance(raw, Mapping):
            return {}
        selected: dict[str, tuple[str, ...]] = {}
        for slug, value in raw.items():
            target = self.registry.get(slug)
            if target is None:
                continue
            chosen = [f for f in split_csv(value) if f in target.allowed_fields]
            if chosen:
                selected[slug] = tuple(dict.fromkeys(["id", *chosen]))
        return selected

    def _search(self, entity: EntitySpec, raw: Any) -> SearchClause | None:
        term = str(raw).strip() if raw is not None else ""
        if not term or not entity.allowed_search:
            return None
        return SearchClause(term=term, columns=tuple(entity.allowed_search))


# =============================================================================
# SQL Rendering
# =============================================================================


def _column_ref(column: str, table_alias: str | None) -> str:
    quoted = quote_identifier(column)
    return f"{table_alias}.{quoted}" if table_alias else quoted


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _equals(ref: str) -> str:
    return f"{ref} = ?"


def _contains(ref: str) -> str:
    return f"LOWER({ref}) LIKE ? ESCAPE '\\'"


@dataclass
class SelectBuilder:
    """
    Builds SQL for one entity from a QueryPlan.

    Example:
        builder = SelectBuilder(registry, posts, plan, scope="active")
        sql, params = builder.build_select(limit=15, offset=0)
    """

    registry: EntityRegistry
    entity: EntitySpec
    plan: QueryPlan | None = None
    scope: TrashScope = "active"
    conditions: list[tuple[str, list[Any]]] = field(default_factory=list)

    alias = "t0"

    def where(self, column: str, value: Any) -> SelectBuilder:
        """
        Add an equality condition outside the plan (tenant scoping, id lookups).

        A dotted column such as ``project.org`` is matched through the relation
        path with an ``EXISTS`` chain.
        """
        *hops, name = column.split(".")
        sql = self._match_through(self.entity, self.alias, hops, name, 1, _equals)
        self.conditions.append((sql, [value]))
        return self

    def build_where_clause(self) -> tuple[str, list[Any]]:
        fragments: list[str] = []
        params: list[Any] = []

        if self.entity.soft_deletes and self.scope != "any":
            deleted = _column_ref("deleted_at", self.alias)
            fragments.append(
                f"{deleted} IS NULL" if self.scope == "active" else f"{deleted} IS NOT NULL"
            )

        for sql, values in self.conditions:
            fragments.append(sql)
            params.extend(values)

        if self.plan is not None:
            for condition in self.plan.filters:
                sql, values = condition.to_sql(self.alias)
                fragments.append(sql)
                params.extend(values)
            if self.plan.search is not None:
                sql, values = self._search_sql(self.plan.search)
                fragments.append(sql)
                params.extend(values)

        if not fragments:
            return "", []
        return "WHERE " + " AND ".join(fragments), params

    def _search_sql(self, search: SearchClause) -> tuple[str, list[Any]]:
        pattern = f"%{_escape_like(search.term.lower())}%"
        branches: list[str] = []
        for path in search.columns:
            *hops, column = path.split(".")
            branches.append(
                self._match_through(self.entity, self.alias, hops, column, 1, _contains)
            )
        return "(" + " OR ".join(branches) + ")", [pattern] * len(branches)

    def _match_through(
        self,
        owner: EntitySpec,
        owner_alias: str,
        hops: list[str],
        column: str,
        depth: int,
        test: Callable[[str], str],
    ) -> str:
        if not hops:
            return test(_column_ref(column, owner_alias))

        info = self.registry.relation(owner.slug, hops[0])
        assert info is not None  # checked when the registry was built
        target = self.registry.lookup(info.to_entity)
        alias = f"t{depth}"
        if info.key_on_owner:
            join = f"{_column_ref('id', alias)} = {_column_ref(info.foreign_key, owner_alias)}"
        else:
            join = f"{_column_ref(info.foreign_key, alias)} = {_column_ref('id', owner_alias)}"
        if target.soft_deletes:
            join += f" AND {_column_ref('deleted_at', alias)} IS NULL"
        inner = self._match_through(target, alias, hops[1:], column, depth + 1, test)
        table = quote_identifier(target.storage_table)
        return f"EXISTS (SELECT 1 FROM {table} {alias} WHERE {join} AND {inner})"

    def build_order_clause(self) -> str:
        if self.plan is None or not self.plan.sorts:
            return ""
        return "ORDER BY " + ", ".join(s.to_sql(self.alias) for s in self.plan.sorts)

    def build_select(
        self, limit: int | None = None, offset: int = 0, count_only: bool = False
    ) -> tuple[str, list[Any]]:
        """
        Build a SELECT (or COUNT) statement.

        Returns:
            Tuple of (sql, parameters)
        """
        table = quote_identifier(self.entity.storage_table)
        target = "COUNT(*)" if count_only else f"{self.alias}.*"
        parts = [f"SELECT {target} FROM {table} {self.alias}"]

        where_clause, params = self.build_where_clause()
        if where_clause:
            parts.append(where_clause)

        if not count_only:
            order_clause = self.build_order_clause()
            if order_clause:
                parts.append(order_clause)
            if limit is not None:
                parts.append("LIMIT ? OFFSET ?")
                params = [*params, limit, offset]

        return " ".join(parts), params

    def build_count(self) -> tuple[str, list[Any]]:
        return self.build_select(count_only=True)
