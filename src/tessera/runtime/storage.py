"""
Storage collaborator interface.

The dispatcher and the nested executor only talk to storage through these
protocols. ``tessera.runtime.repository`` provides the SQLite implementation.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from contextlib import AbstractContextManager
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from tessera.runtime.query_builder import IncludePath, QueryPlan, TrashScope
    from tessera.specs.entity import EntitySpec

Row = dict[str, Any]


class StorageSession(Protocol):
    """One unit of work. Everything done through a session commits or rolls back together."""

    def find(
        self,
        entity: EntitySpec,
        id: int,
        scope: TrashScope = "active",
        where: Mapping[str, Any] | None = None,
    ) -> Row | None: ...

    def select(
        self,
        entity: EntitySpec,
        plan: QueryPlan | None,
        scope: TrashScope = "active",
        where: Mapping[str, Any] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Row]: ...

    def count(
        self,
        entity: EntitySpec,
        plan: QueryPlan | None,
        scope: TrashScope = "active",
        where: Mapping[str, Any] | None = None,
    ) -> int: ...

    def insert(self, entity: EntitySpec, data: Mapping[str, Any]) -> Row: ...

    def update(self, entity: EntitySpec, id: int, data: Mapping[str, Any]) -> Row: ...

    def soft_delete(self, entity: EntitySpec, id: int) -> None: ...

    def restore(self, entity: EntitySpec, id: int) -> Row: ...

    def delete(self, entity: EntitySpec, id: int) -> None: ...

    def load_includes(
        self, entity: EntitySpec, rows: list[Row], includes: Sequence[IncludePath]
    ) -> list[Row]: ...


class StorageBackend(Protocol):
    """
    Hands out sessions; ``transaction()`` rolls back on any exception, caller abort included.

    ``write=True`` takes the write lock up front, so concurrent read-then-write
    units of work queue behind each other instead of failing on lock upgrade.
    """

    def transaction(self, write: bool = False) -> AbstractContextManager[StorageSession]: ...
