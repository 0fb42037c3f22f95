"""
Data path storage - the read-only view of legacy and migrated data used by probes.

The rollout controller and the health monitor never write business data.
They count active rows, read samples, time an aggregate join and open a
transaction that is always rolled back. DataPathStorage describes exactly
those operations so the probes can run against any backend.

Implementations:
    - SQLAlchemyDataPathStorage: SQL tables through an AsyncEngine
    - InMemoryDataPathStorage: dict-backed rows for tests and development

Table layout is described by DataPathTables. Every table needs the
configured active column; the legacy table also needs the join column
referencing `join_table.id`.

Example:
    >>> tables = DataPathTables(
    ...     legacy="materials",
    ...     migrated="materials_migration",
    ...     audit="materials_audit",
    ...     join_table="suppliers",
    ...     join_column="supplier_id",
    ... )
    >>> storage = SQLAlchemyDataPathStorage(engine, tables)
    >>> await storage.count_active(tables.legacy)
    1200
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from rolloutguard.observability import Tracer, create_tracer
from rolloutguard.observability.attributes import ATTR_DB_SYSTEM, ATTR_DB_TABLE
from rolloutguard.repositories._connection import (
    dialect_name,
    execute_with_connection,
    quote_identifier,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Row = dict[str, Any]


@dataclass(frozen=True)
class DataPathTables:
    """
    Names of the tables the probes look at.

    Attributes:
        legacy: Table serving the legacy path.
        migrated: Table serving the migrated path.
        audit: Audit log table.
        join_table: Table joined by the aggregate probe.
        join_column: Column of the legacy table referencing join_table.id.
        active_column: Boolean column marking active rows.
    """

    legacy: str
    migrated: str
    audit: str
    join_table: str
    join_column: str
    active_column: str = "active"

    def __post_init__(self) -> None:
        for name in (
            self.legacy,
            self.migrated,
            self.audit,
            self.join_table,
            self.join_column,
            self.active_column,
        ):
            quote_identifier(name)


@runtime_checkable
class DataPathStorage(Protocol):
    """
    Protocol for the storage the probes run against.

    All operations are read-only. run_in_transaction never commits.
    """

    @property
    def tables(self) -> DataPathTables:
        """Table layout used by this storage."""
        ...

    async def count_active(self, table: str) -> int:
        """
        Count active rows in a table.

        Args:
            table: One of the configured table names.

        Returns:
            Number of rows whose active column is true.
        """
        ...

    async def select_sample(self, table: str, limit: int) -> list[Row]:
        """
        Read up to `limit` rows from a table.

        Args:
            table: One of the configured table names.
            limit: Maximum rows to return.

        Returns:
            Rows as dictionaries.
        """
        ...

    async def run_in_transaction(
        self,
        fn: Callable[[DataPathStorage], Awaitable[T]],
    ) -> T:
        """
        Run fn inside a transaction that is always rolled back.

        Args:
            fn: Coroutine function receiving a storage bound to the
                transaction.

        Returns:
            Whatever fn returns.
        """
        ...

    async def run_aggregate_query(self, limit: int) -> list[Row]:
        """
        Run the legacy-to-join_table aggregate join.

        Args:
            limit: Maximum rows to return.

        Returns:
            Joined rows as dictionaries.
        """
        ...


class SQLAlchemyDataPathStorage:
    """
    SQLAlchemy implementation of DataPathStorage.

    Accepts an AsyncEngine (each call opens its own connection) or an
    AsyncConnection (calls share it). run_in_transaction always opens a
    dedicated transaction and rolls it back.

    Example:
        >>> storage = SQLAlchemyDataPathStorage(engine, tables)
        >>> rows = await storage.run_aggregate_query(limit=100)
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tables: DataPathTables,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the storage.

        Args:
            conn: Database connection or engine
            tables: Table layout
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._conn = conn
        self._tables = tables
        self._db_system = dialect_name(conn)

    @property
    def tables(self) -> DataPathTables:
        return self._tables

    async def count_active(self, table: str) -> int:
        with self._tracer.span(
            "rolloutguard.storage.count_active",
            {ATTR_DB_SYSTEM: self._db_system, ATTR_DB_TABLE: table},
        ):
            query = text(f"""
                SELECT COUNT(*)
                FROM {quote_identifier(table)}
                WHERE {self._tables.active_column} = :active
            """)
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, {"active": True})
                return int(result.scalar_one())

    async def select_sample(self, table: str, limit: int) -> list[Row]:
        with self._tracer.span(
            "rolloutguard.storage.select_sample",
            {ATTR_DB_SYSTEM: self._db_system, ATTR_DB_TABLE: table},
        ):
            query = text(f"SELECT * FROM {quote_identifier(table)} LIMIT :limit")
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, {"limit": limit})
                return [dict(row._mapping) for row in result.fetchall()]

    async def run_aggregate_query(self, limit: int) -> list[Row]:
        t = self._tables
        with self._tracer.span(
            "rolloutguard.storage.run_aggregate_query",
            {ATTR_DB_SYSTEM: self._db_system, ATTR_DB_TABLE: t.legacy},
        ):
            query = text(f"""
                SELECT l.*, j.id AS joined_id
                FROM {t.legacy} l
                LEFT JOIN {t.join_table} j ON l.{t.join_column} = j.id
                WHERE l.{t.active_column} = :active
                LIMIT :limit
            """)
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, {"active": True, "limit": limit})
                return [dict(row._mapping) for row in result.fetchall()]

    async def run_in_transaction(
        self,
        fn: Callable[[DataPathStorage], Awaitable[T]],
    ) -> T:
        with self._tracer.span(
            "rolloutguard.storage.run_in_transaction",
            {ATTR_DB_SYSTEM: self._db_system},
        ):
            if isinstance(self._conn, AsyncEngine):
                async with self._conn.connect() as conn:
                    return await self._rollback_only(conn, fn)
            return await self._rollback_only(self._conn, fn)

    async def _rollback_only(
        self,
        conn: AsyncConnection,
        fn: Callable[[DataPathStorage], Awaitable[T]],
    ) -> T:
        bound = SQLAlchemyDataPathStorage(conn, self._tables, tracer=self._tracer)
        if conn.in_transaction():
            trans = await conn.begin_nested()
        else:
            trans = await conn.begin()
        try:
            return await fn(bound)
        finally:
            await trans.rollback()


class InMemoryDataPathStorage:
    """
    In-memory implementation of DataPathStorage for testing.

    Rows live in a dict keyed by table name. Tests can inject latency or
    failures per operation through `delays` and `errors`, keyed by
    operation name ("count_active", "select_sample", "aggregate",
    "transaction").

    Example:
        >>> storage = InMemoryDataPathStorage(tables)
        >>> storage.add_rows(tables.legacy, [{"id": 1, "active": True}])
        >>> storage.errors["aggregate"] = TimeoutError("slow join")
    """

    def __init__(
        self,
        tables: DataPathTables,
        rows: dict[str, list[Row]] | None = None,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._tables = tables
        self._rows: dict[str, list[Row]] = {
            name: []
            for name in (tables.legacy, tables.migrated, tables.audit, tables.join_table)
        }
        for table, table_rows in (rows or {}).items():
            self.add_rows(table, table_rows)
        self.delays: dict[str, float] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[str] = []

    @property
    def tables(self) -> DataPathTables:
        return self._tables

    def add_rows(self, table: str, rows: list[Row]) -> None:
        """Append rows to a table."""
        self._rows.setdefault(table, []).extend(dict(r) for r in rows)

    def set_active_counts(self, legacy: int, migrated: int) -> None:
        """Replace the legacy and migrated tables with that many active rows."""
        self._rows[self._tables.legacy] = [
            {"id": i, self._tables.active_column: True} for i in range(legacy)
        ]
        self._rows[self._tables.migrated] = [
            {"id": i, self._tables.active_column: True} for i in range(migrated)
        ]

    def rows(self, table: str) -> list[Row]:
        """Copy of the rows of a table."""
        return [dict(r) for r in self._rows.get(table, [])]

    async def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        delay = self.delays.get(operation)
        if delay:
            await asyncio.sleep(delay)
        error = self.errors.get(operation)
        if error is not None:
            raise error

    def _table(self, table: str) -> list[Row]:
        if table not in self._rows:
            raise LookupError(f"Unknown table: {table}")
        return self._rows[table]

    async def count_active(self, table: str) -> int:
        with self._tracer.span(
            "rolloutguard.storage.count_active",
            {ATTR_DB_SYSTEM: "memory", ATTR_DB_TABLE: table},
        ):
            await self._enter("count_active")
            column = self._tables.active_column
            return sum(1 for row in self._table(table) if row.get(column))

    async def select_sample(self, table: str, limit: int) -> list[Row]:
        with self._tracer.span(
            "rolloutguard.storage.select_sample",
            {ATTR_DB_SYSTEM: "memory", ATTR_DB_TABLE: table},
        ):
            await self._enter("select_sample")
            return [dict(r) for r in self._table(table)[:limit]]

    async def run_aggregate_query(self, limit: int) -> list[Row]:
        t = self._tables
        with self._tracer.span(
            "rolloutguard.storage.run_aggregate_query",
            {ATTR_DB_SYSTEM: "memory", ATTR_DB_TABLE: t.legacy},
        ):
            await self._enter("aggregate")
            joined = {row.get("id"): row for row in self._table(t.join_table)}
            out: list[Row] = []
            for row in self._table(t.legacy):
                if not row.get(t.active_column):
                    continue
                match = joined.get(row.get(t.join_column))
                out.append({**row, "joined_id": match.get("id") if match else None})
                if len(out) >= limit:
                    break
            return out

    async def run_in_transaction(
        self,
        fn: Callable[[DataPathStorage], Awaitable[T]],
    ) -> T:
        with self._tracer.span(
            "rolloutguard.storage.run_in_transaction",
            {ATTR_DB_SYSTEM: "memory"},
        ):
            await self._enter("transaction")
            try:
                return await fn(self._staged())
            finally:
                logger.debug("In-memory probe transaction rolled back")

    def _staged(self) -> InMemoryDataPathStorage:
        # Writes made inside a transaction land on a copy of the rows and are
        # dropped with it. Failure injection and the call log stay shared.
        staged = InMemoryDataPathStorage(self._tables, tracer=self._tracer)
        staged._rows = copy.deepcopy(self._rows)
        staged.delays = self.delays
        staged.errors = self.errors
        staged.calls = self.calls
        return staged


__all__ = [
    "Row",
    "DataPathTables",
    "DataPathStorage",
    "SQLAlchemyDataPathStorage",
    "InMemoryDataPathStorage",
]
