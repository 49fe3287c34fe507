"""
SQLite repository - reference storage collaborator.

DatabaseManager owns the database file, creates tables from the registry and
hands out one connection per unit of work. SQLiteRepository runs every
engine storage call against that connection, so all of a transaction's
statements commit or roll back together.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING, Any

from tessera.runtime.errors import PersistenceError, StorageBusyError
from tessera.runtime.logging import Colors, get_logger, log_with_context
from tessera.runtime.query_builder import QueryPlan, SelectBuilder, TrashScope, quote_identifier
from tessera.specs.entity import ColumnSpec, ColumnType, EntitySpec

if TYPE_CHECKING:
    from tessera.runtime.query_builder import IncludePath
    from tessera.runtime.registry import EntityRegistry
    from tessera.runtime.relation_loader import RelationLoader

logger = get_logger("Storage", Colors.STORAGE)


# =============================================================================
# Constraint Errors
# =============================================================================


def _parse_constraint_error(exc: str | Exception) -> tuple[str, str | None]:
    """
    Parse a SQLite constraint message into (constraint_type, field).

    Examples:
        "UNIQUE constraint failed: users.email" -> ("unique", "email")
        "FOREIGN KEY constraint failed" -> ("foreign_key", None)
    """
    err = str(exc)

    for marker, ctype in (
        ("UNIQUE constraint failed:", "unique"),
        ("NOT NULL constraint failed:", "not_null"),
    ):
        if marker in err:
            parts = err.split(marker)[-1].strip()
            # "posts.slug" -> "slug"; composite keys report the first column
            field_name = parts.split(",")[0].split(".")[-1].strip() if parts else None
            return ctype, field_name or None

    if "FOREIGN KEY constraint failed" in err:
        return "foreign_key", None

    return "integrity", None


def _constraint_error(exc: sqlite3.IntegrityError, table: str) -> PersistenceError:
    ctype, field = _parse_constraint_error(exc)
    if ctype == "unique":
        msg = (
            f"A {table} record with this {field} already exists."
            if field
            else f"Duplicate value violates unique constraint on {table}."
        )
    elif ctype == "not_null":
        msg = f"The {field} field cannot be null." if field else f"Missing value on {table}."
    elif ctype == "foreign_key":
        msg = f"Referenced record does not exist or is still referenced ({table})."
    else:
        msg = f"Integrity constraint violated on {table}: {exc}"
    log_with_context(
        logger, logging.WARNING, "Constraint violation", table=table, constraint_type=ctype
    )
    return PersistenceError(msg, field=field, constraint_type=ctype)


def _is_locked(exc: sqlite3.OperationalError) -> bool:
    message = str(exc)
    return "database is locked" in message or "database table is locked" in message


# =============================================================================
# Type Mapping
# =============================================================================

_SQLITE_TYPES: dict[ColumnType, str] = {
    ColumnType.STRING: "TEXT",
    ColumnType.TEXT: "TEXT",
    ColumnType.INTEGER: "INTEGER",
    ColumnType.DECIMAL: "REAL",
    ColumnType.BOOLEAN: "INTEGER",  # 0/1
    ColumnType.DATE: "TEXT",  # ISO format
    ColumnType.DATETIME: "TEXT",  # ISO format
    ColumnType.JSON: "TEXT",
}


def _python_to_sqlite(value: Any) -> Any:
    """Convert a Python value to a SQLite-compatible value."""
    if value is None:
        return None
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


def _sqlite_to_python(value: Any, column: ColumnSpec | None) -> Any:
    """Convert a stored value back based on its column type."""
    if value is None or column is None:
        return value
    if column.type == ColumnType.BOOLEAN:
        return bool(value)
    if column.type == ColumnType.JSON and isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def decode_row(entity: EntitySpec, row: sqlite3.Row | Mapping[str, Any]) -> dict[str, Any]:
    """Turn a stored row into a plain dict with Python values."""
    data = dict(row)
    return {k: _sqlite_to_python(v, entity.get_column(k)) for k, v in data.items()}


def _now() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


# =============================================================================
# Database Manager
# =============================================================================


class DatabaseManager:
    """
    Manages the SQLite database file and its schema.

    Every call to ``transaction()`` opens a fresh connection, so a manager is
    safe to share between worker threads.
    """

    def __init__(
        self,
        db_path: str | Path,
        registry: EntityRegistry,
        timeout: float = 5.0,
    ):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file
            registry: Entity registry the schema is built from
            timeout: Seconds to wait on a locked database
        """
        from tessera.runtime.relation_loader import RelationLoader

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.registry = registry
        self.timeout = timeout
        self.loader = RelationLoader(registry)

    @contextmanager
    def connection(self, write: bool = False) -> Iterator[sqlite3.Connection]:
        """
        Open a connection inside an explicit transaction.

        Commits on success. Rolls back on any exception, including
        KeyboardInterrupt and generator cancellation. ``write=True`` opens
        with ``BEGIN IMMEDIATE`` so the write lock is held from the first
        statement and competing writers wait up to ``timeout``.

        Raises:
            StorageBusyError: If the database stays locked past the timeout
        """
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout, isolation_level=None)
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        except sqlite3.OperationalError as exc:
            if not _is_locked(exc):
                raise
            log_with_context(
                logger, logging.WARNING, "Database busy", path=str(self.db_path), write=write
            )
            raise StorageBusyError() from exc
        finally:
            conn.close()

    @contextmanager
    def transaction(self, write: bool = False) -> Iterator[SQLiteRepository]:
        """Yield a repository bound to one transaction."""
        with self.connection(write=write) as conn:
            yield SQLiteRepository(conn, self.registry, self.loader)

    def create_table(self, entity: EntitySpec) -> None:
        """Create a table (and its FK indexes) if it doesn't exist."""
        from tessera.runtime.relation_loader import get_foreign_key_indexes

        table = quote_identifier(entity.storage_table)
        sql = f"CREATE TABLE IF NOT EXISTS {table} ({self._build_columns(entity)})"

        with self.connection(write=True) as conn:
            conn.execute(sql)
            for index_sql in get_foreign_key_indexes(entity, self.registry):
                conn.execute(index_sql)

    def _build_columns(self, entity: EntitySpec) -> str:
        from tessera.runtime.relation_loader import get_foreign_key_constraints

        columns = ['"id" INTEGER PRIMARY KEY AUTOINCREMENT']
        columns.extend(self._build_column(c) for c in entity.columns)
        if entity.timestamps:
            columns += ['"created_at" TEXT', '"updated_at" TEXT']
        if entity.soft_deletes:
            columns.append('"deleted_at" TEXT')
        columns.extend(get_foreign_key_constraints(entity, self.registry))
        return ", ".join(columns)

    def _build_column(self, column: ColumnSpec) -> str:
        parts = [quote_identifier(column.name), _SQLITE_TYPES[column.type]]
        if not column.nullable:
            parts.append("NOT NULL")
        if column.unique:
            parts.append("UNIQUE")
        if column.default is not None:
            default_val = _python_to_sqlite(column.default)
            if isinstance(default_val, str):
                escaped = default_val.replace("'", "''")
                parts.append(f"DEFAULT '{escaped}'")
            else:
                parts.append(f"DEFAULT {default_val}")
        return " ".join(parts)

    def create_all_tables(self) -> None:
        """Create tables for every registered entity, targets of foreign keys first."""
        for entity in _dependency_order(self.registry):
            self.create_table(entity)
        logger.info(f"Schema ready at {self.db_path}")

    def table_exists(self, table_name: str) -> bool:
        with self.connection() as conn:
            cursor = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table_name,)
            )
            return cursor.fetchone() is not None

    def get_table_columns(self, table_name: str) -> list[str]:
        with self.connection() as conn:
            cursor = conn.execute(f"PRAGMA table_info({quote_identifier(table_name)})")
            return [row[1] for row in cursor.fetchall()]


def _dependency_order(registry: EntityRegistry) -> list[EntitySpec]:
    ordered: list[EntitySpec] = []
    visiting: set[str] = set()
    done: set[str] = set()

    def visit(entity: EntitySpec) -> None:
        if entity.slug in done or entity.slug in visiting:
            return
        visiting.add(entity.slug)
        for info in registry.relations_of(entity.slug):
            if info.key_on_owner:
                visit(registry.lookup(info.to_entity))
        visiting.discard(entity.slug)
        done.add(entity.slug)
        ordered.append(entity)

    for entity in registry:
        visit(entity)
    return ordered


# =============================================================================
# Repository
# =============================================================================


class SQLiteRepository:
    """
    Generic CRUD over any registered entity, bound to one connection.

    Obtain one from ``DatabaseManager.transaction()``.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        registry: EntityRegistry,
        loader: RelationLoader | None = None,
    ):
        self.conn = conn
        self.registry = registry
        self._loader = loader

    def _builder(
        self,
        entity: EntitySpec,
        plan: QueryPlan | None,
        scope: TrashScope,
        where: Mapping[str, Any] | None,
    ) -> SelectBuilder:
        builder = SelectBuilder(self.registry, entity, plan, scope=scope)
        for column, value in (where or {}).items():
            builder.where(column, value)
        return builder

    def find(
        self,
        entity: EntitySpec,
        id: int,
        scope: TrashScope = "active",
        where: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Load one row by id, or None."""
        builder = self._builder(entity, None, scope, where).where("id", id)
        sql, params = builder.build_select(limit=1)
        row = self.conn.execute(sql, params).fetchone()
        return decode_row(entity, row) if row is not None else None

    def select(
        self,
        entity: EntitySpec,
        plan: QueryPlan | None,
        scope: TrashScope = "active",
        where: Mapping[str, Any] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Run a composed list query."""
        sql, params = self._builder(entity, plan, scope, where).build_select(limit, offset)
        return [decode_row(entity, row) for row in self.conn.execute(sql, params).fetchall()]

    def count(
        self,
        entity: EntitySpec,
        plan: QueryPlan | None,
        scope: TrashScope = "active",
        where: Mapping[str, Any] | None = None,
    ) -> int:
        sql, params = self._builder(entity, plan, scope, where).build_count()
        return int(self.conn.execute(sql, params).fetchone()[0])

    def _execute_write(self, entity: EntitySpec, sql: str, params: list[Any]) -> sqlite3.Cursor:
        try:
            return self.conn.execute(sql, params)
        except sqlite3.IntegrityError as exc:
            raise _constraint_error(exc, entity.storage_table) from exc

    def insert(self, entity: EntitySpec, data: Mapping[str, Any]) -> dict[str, Any]:
        """
        Insert a row and return it as stored.

        Raises:
            PersistenceError: On unique, not-null or foreign key violations
        """
        values = {k: _python_to_sqlite(v) for k, v in data.items()}
        if entity.timestamps:
            now = _now()
            values.setdefault("created_at", now)
            values.setdefault("updated_at", now)

        table = quote_identifier(entity.storage_table)
        if values:
            columns = ", ".join(quote_identifier(k) for k in values)
            placeholders = ", ".join("?" for _ in values)
            sql = f"INSERT INTO {table} ({columns}) VALUES ({placeholders})"
        else:
            sql = f"INSERT INTO {table} DEFAULT VALUES"

        cursor = self._execute_write(entity, sql, list(values.values()))
        row = self.find(entity, int(cursor.lastrowid or 0), scope="any")
        assert row is not None
        return row

    def update(self, entity: EntitySpec, id: int, data: Mapping[str, Any]) -> dict[str, Any]:
        """
        Update a row and return it as stored.

        Raises:
            PersistenceError: On constraint violations
        """
        values = {k: _python_to_sqlite(v) for k, v in data.items()}
        if entity.timestamps:
            values["updated_at"] = _now()

        if values:
            assignments = ", ".join(f"{quote_identifier(k)} = ?" for k in values)
            table = quote_identifier(entity.storage_table)
            sql = f'UPDATE {table} SET {assignments} WHERE "id" = ?'
            self._execute_write(entity, sql, [*values.values(), id])

        row = self.find(entity, id, scope="any")
        assert row is not None
        return row

    def soft_delete(self, entity: EntitySpec, id: int) -> None:
        table = quote_identifier(entity.storage_table)
        sql = f'UPDATE {table} SET "deleted_at" = ? WHERE "id" = ?'
        self._execute_write(entity, sql, [_now(), id])

    def restore(self, entity: EntitySpec, id: int) -> dict[str, Any]:
        table = quote_identifier(entity.storage_table)
        self._execute_write(entity, f'UPDATE {table} SET "deleted_at" = NULL WHERE "id" = ?', [id])
        row = self.find(entity, id)
        assert row is not None
        return row

    def delete(self, entity: EntitySpec, id: int) -> None:
        """Physically remove a row."""
        table = quote_identifier(entity.storage_table)
        self._execute_write(entity, f'DELETE FROM {table} WHERE "id" = ?', [id])

    def load_includes(
        self,
        entity: EntitySpec,
        rows: list[dict[str, Any]],
        includes: Sequence[IncludePath],
    ) -> list[dict[str, Any]]:
        """Attach included relations and aggregates to rows."""
        if self._loader is None or not includes or not rows:
            return rows
        return self._loader.load(self.conn, entity, rows, includes)
