"""
Relation loader for include paths.

Included relations are loaded level by level with one batched query per
relation, so a list of N rows never costs N queries. Aggregate includes
(``commentsCount``, ``authorExists``) become ``comments_count`` and
``author_exists`` keys computed with one grouped query.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from tessera.runtime.query_builder import quote_identifier
from tessera.runtime.repository import decode_row

if TYPE_CHECKING:
    from tessera.runtime.query_builder import IncludePath
    from tessera.runtime.registry import EntityRegistry, RelationInfo
    from tessera.specs.entity import EntitySpec


@dataclass
class IncludeNode:
    """One level of the include tree."""

    relation: RelationInfo | None = None
    children: dict[str, IncludeNode] = field(default_factory=dict)
    aggregates: dict[str, tuple[RelationInfo, str]] = field(default_factory=dict)


def build_include_tree(includes: Sequence[IncludePath]) -> IncludeNode:
    """
    Merge include paths into a tree.

    Example:
        ["comments.user", "comments", "commentsCount"] ->
            root{children: comments{children: user}, aggregates: comments_count}
    """
    root = IncludeNode()
    for path in includes:
        node = root
        hops = path.relations[:-1] if path.aggregate else path.relations
        for info in hops:
            node = node.children.setdefault(info.name, IncludeNode(relation=info))
        if path.aggregate:
            last = path.relations[-1]
            node.aggregates[path.output_key] = (last, path.aggregate)
    return root


class RelationLoader:
    """
    Loads included relations onto rows.

    Soft-deleted related rows are never attached.
    """

    def __init__(self, registry: EntityRegistry):
        self.registry = registry

    def load(
        self,
        conn: sqlite3.Connection,
        entity: EntitySpec,
        rows: list[dict[str, Any]],
        includes: Sequence[IncludePath],
    ) -> list[dict[str, Any]]:
        """
        Load relations for a list of entity rows.

        Args:
            conn: Open connection (the caller's transaction)
            entity: Entity the rows belong to
            rows: Decoded rows, mutated in place
            includes: Resolved include paths

        Returns:
            The same rows, with relations attached
        """
        self._load_level(conn, rows, build_include_tree(includes))
        return rows

    def _load_level(
        self, conn: sqlite3.Connection, rows: list[dict[str, Any]], node: IncludeNode
    ) -> None:
        if not rows:
            return
        for child in node.children.values():
            assert child.relation is not None
            related = self._load_relation(conn, child.relation, rows)
            self._load_level(conn, related, child)
        for key, (relation, aggregate) in node.aggregates.items():
            self._load_aggregate(conn, relation, aggregate, key, rows)

    def _active_clause(self, target: EntitySpec) -> str:
        return ' AND "deleted_at" IS NULL' if target.soft_deletes else ""

    def _load_relation(
        self, conn: sqlite3.Connection, relation: RelationInfo, rows: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        """Attach one relation to every row; return the related rows for the next level."""
        target = self.registry.lookup(relation.to_entity)
        table = quote_identifier(target.storage_table)

        if relation.key_on_owner:
            match_column, owner_column = "id", relation.foreign_key
        else:
            match_column, owner_column = relation.foreign_key, "id"

        keys = list({row[owner_column] for row in rows if row.get(owner_column) is not None})
        grouped: dict[Any, list[dict[str, Any]]] = {}
        if keys:
            placeholders = ", ".join("?" for _ in keys)
            sql = (
                f"SELECT * FROM {table} WHERE {quote_identifier(match_column)} IN ({placeholders})"
                f"{self._active_clause(target)} ORDER BY \"id\""
            )
            for raw in conn.execute(sql, keys).fetchall():
                related_row = decode_row(target, raw)
                grouped.setdefault(related_row[match_column], []).append(related_row)

        loaded: list[dict[str, Any]] = []
        for row in rows:
            matches = grouped.get(row.get(owner_column), [])
            if relation.is_to_one:
                # A related row may hang under several owners; give each its own copy.
                value = dict(matches[0]) if matches else None
                row[relation.name] = value
                if value is not None:
                    loaded.append(value)
            else:
                copies = [dict(m) for m in matches]
                row[relation.name] = copies
                loaded.extend(copies)
        return loaded

    def _load_aggregate(
        self,
        conn: sqlite3.Connection,
        relation: RelationInfo,
        aggregate: str,
        key: str,
        rows: list[dict[str, Any]],
    ) -> None:
        target = self.registry.lookup(relation.to_entity)
        table = quote_identifier(target.storage_table)

        if relation.key_on_owner:
            match_column, owner_column = "id", relation.foreign_key
        else:
            match_column, owner_column = relation.foreign_key, "id"

        keys = list({row[owner_column] for row in rows if row.get(owner_column) is not None})
        counts: dict[Any, int] = {}
        if keys:
            column = quote_identifier(match_column)
            placeholders = ", ".join("?" for _ in keys)
            sql = (
                f"SELECT {column}, COUNT(*) FROM {table} WHERE {column} IN ({placeholders})"
                f"{self._active_clause(target)} GROUP BY {column}"
            )
            counts = {k: n for k, n in conn.execute(sql, keys).fetchall()}

        for row in rows:
            n = counts.get(row.get(owner_column), 0)
            row[key] = n if aggregate == "count" else n > 0


# =============================================================================
# Schema Helpers
# =============================================================================


def build_foreign_key_constraint(relation: RelationInfo, target: EntitySpec) -> str:
    """
    Build a FOREIGN KEY constraint for a belongs_to relation.

    Deleting a referenced row is refused while references remain.
    """
    return (
        f"FOREIGN KEY ({quote_identifier(relation.foreign_key)}) "
        f'REFERENCES {quote_identifier(target.storage_table)}("id") ON DELETE RESTRICT'
    )


def get_foreign_key_constraints(entity: EntitySpec, registry: EntityRegistry) -> list[str]:
    """FK constraints for every key this entity holds."""
    return [
        build_foreign_key_constraint(info, registry.lookup(info.to_entity))
        for info in registry.relations_of(entity.slug)
        if info.key_on_owner
    ]


def get_foreign_key_indexes(entity: EntitySpec, registry: EntityRegistry) -> list[str]:
    """CREATE INDEX statements for FK columns."""
    indexes = []
    for info in registry.relations_of(entity.slug):
        if info.key_on_owner:
            idx_name = quote_identifier(f"idx_{entity.storage_table}_{info.foreign_key}")
            indexes.append(
                f"CREATE INDEX IF NOT EXISTS {idx_name} "
                f"ON {quote_identifier(entity.storage_table)}({quote_identifier(info.foreign_key)})"
            )
    return indexes
