"""
FlagRepository - persistence for the migration flag record.

The flag record is a single logical row identified by a flag key. This
module provides the protocol FlagStore depends on plus two
implementations:

    - InMemoryFlagRepository: for tests and local development, with
      failure injection for exercising fail-closed paths
    - SQLAlchemyFlagRepository: stores the record in a `migration_flags`
      table through SQLAlchemy's async engine (PostgreSQL or SQLite)

Usage:
    >>> from sqlalchemy.ext.asyncio import create_async_engine
    >>> from rolloutguard.repositories import SQLAlchemyFlagRepository
    >>>
    >>> engine = create_async_engine("postgresql+asyncpg://localhost/app")
    >>> repo = SQLAlchemyFlagRepository(engine)
    >>> await repo.create_schema()
    >>> flags = await repo.load()  # None until the first save
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import Boolean, DateTime, Integer, String, bindparam, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from rolloutguard.models import MigrationFlags
from rolloutguard.observability import Tracer, create_tracer
from rolloutguard.observability.attributes import ATTR_DB_SYSTEM, ATTR_FLAGS_ACTOR
from rolloutguard.repositories._connection import (
    dialect_name,
    execute_with_connection,
    quote_identifier,
)

DEFAULT_FLAG_KEY = "migration_flags"


@runtime_checkable
class FlagRepository(Protocol):
    """
    Protocol for flag record persistence.

    Implementations store exactly one record per repository instance.
    Writes replace the whole record.
    """

    async def load(self) -> MigrationFlags | None:
        """
        Load the persisted record.

        Returns:
            The record, or None if it has never been saved.
        """
        ...

    async def save(self, flags: MigrationFlags) -> None:
        """
        Replace the persisted record.

        Args:
            flags: The new record.
        """
        ...


class InMemoryFlagRepository:
    """
    In-memory implementation of FlagRepository for testing.

    Set `load_error` or `save_error` to an exception instance to make the
    next calls raise it, which lets tests exercise the fail-closed paths of
    FlagStore.

    Example:
        >>> repo = InMemoryFlagRepository()
        >>> await repo.save(MigrationFlags.safe_defaults())
        >>> repo.load_error = ConnectionError("db down")
        >>> await repo.load()  # raises ConnectionError
    """

    def __init__(
        self,
        initial: MigrationFlags | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._flags = initial
        self._lock = asyncio.Lock()
        self.load_error: Exception | None = None
        self.save_error: Exception | None = None
        self.load_count = 0
        self.save_count = 0

    async def load(self) -> MigrationFlags | None:
        with self._tracer.span(
            "rolloutguard.flag_repo.load",
            {ATTR_DB_SYSTEM: "memory"},
        ):
            async with self._lock:
                self.load_count += 1
                if self.load_error is not None:
                    raise self.load_error
                return self._flags

    async def save(self, flags: MigrationFlags) -> None:
        with self._tracer.span(
            "rolloutguard.flag_repo.save",
            {ATTR_DB_SYSTEM: "memory", ATTR_FLAGS_ACTOR: flags.updated_by},
        ):
            async with self._lock:
                self.save_count += 1
                if self.save_error is not None:
                    raise self.save_error
                self._flags = flags

    @property
    def stored(self) -> MigrationFlags | None:
        """The record as currently stored, bypassing failure injection."""
        return self._flags


class SQLAlchemyFlagRepository:
    """
    SQLAlchemy implementation of FlagRepository.

    Persists the record to a `migration_flags` table keyed by `flag_key`,
    so several independent rollouts can share one table. Saves are upserts
    (INSERT ... ON CONFLICT DO UPDATE), supported by both PostgreSQL and
    SQLite.

    Example:
        >>> repo = SQLAlchemyFlagRepository(engine, flag_key="customers_v2")
        >>> await repo.save(MigrationFlags.safe_defaults())
        >>> flags = await repo.load()
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        *,
        flag_key: str = DEFAULT_FLAG_KEY,
        table_name: str = "migration_flags",
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ):
        """
        Initialize the repository.

        Args:
            conn: Database connection or engine
            flag_key: Logical key of the record in the table
            table_name: Name of the flags table
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._conn = conn
        self._flag_key = flag_key
        self._table = quote_identifier(table_name)
        self._db_system = dialect_name(conn)

    @property
    def flag_key(self) -> str:
        return self._flag_key

    async def create_schema(self) -> None:
        """Create the flags table if it does not exist."""
        ddl = text(f"""
            CREATE TABLE IF NOT EXISTS {self._table} (
                flag_key VARCHAR(255) PRIMARY KEY,
                read_enabled BOOLEAN NOT NULL,
                write_enabled BOOLEAN NOT NULL,
                validation_logging_enabled BOOLEAN NOT NULL,
                percentage INTEGER NOT NULL,
                emergency_rollback BOOLEAN NOT NULL,
                updated_at TIMESTAMP WITH TIME ZONE NOT NULL,
                updated_by VARCHAR(255) NOT NULL
            )
        """)
        async with execute_with_connection(self._conn, transactional=True) as conn:
            await conn.execute(ddl)

    async def load(self) -> MigrationFlags | None:
        """
        Load the persisted record.

        Returns:
            The record, or None if no row exists for the flag key.
        """
        with self._tracer.span(
            "rolloutguard.flag_repo.load",
            {ATTR_DB_SYSTEM: self._db_system},
        ):
            query = text(f"""
                SELECT
                    read_enabled, write_enabled, validation_logging_enabled,
                    percentage, emergency_rollback, updated_at, updated_by
                FROM {self._table}
                WHERE flag_key = :flag_key
            """).columns(
                read_enabled=Boolean,
                write_enabled=Boolean,
                validation_logging_enabled=Boolean,
                percentage=Integer,
                emergency_rollback=Boolean,
                updated_at=DateTime(timezone=True),
                updated_by=String,
            )

            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, {"flag_key": self._flag_key})
                row = result.fetchone()

            if row is None:
                return None
            return self._row_to_flags(row)

    async def save(self, flags: MigrationFlags) -> None:
        """
        Upsert the record.

        Args:
            flags: The new record.
        """
        with self._tracer.span(
            "rolloutguard.flag_repo.save",
            {ATTR_DB_SYSTEM: self._db_system, ATTR_FLAGS_ACTOR: flags.updated_by},
        ):
            query = text(f"""
                INSERT INTO {self._table} (
                    flag_key, read_enabled, write_enabled,
                    validation_logging_enabled, percentage,
                    emergency_rollback, updated_at, updated_by
                ) VALUES (
                    :flag_key, :read_enabled, :write_enabled,
                    :validation_logging_enabled, :percentage,
                    :emergency_rollback, :updated_at, :updated_by
                )
                ON CONFLICT (flag_key) DO UPDATE
                SET read_enabled = EXCLUDED.read_enabled,
                    write_enabled = EXCLUDED.write_enabled,
                    validation_logging_enabled = EXCLUDED.validation_logging_enabled,
                    percentage = EXCLUDED.percentage,
                    emergency_rollback = EXCLUDED.emergency_rollback,
                    updated_at = EXCLUDED.updated_at,
                    updated_by = EXCLUDED.updated_by
            """).bindparams(bindparam("updated_at", type_=DateTime(timezone=True)))

            async with execute_with_connection(self._conn, transactional=True) as conn:
                await conn.execute(
                    query,
                    {
                        "flag_key": self._flag_key,
                        "read_enabled": flags.read_enabled,
                        "write_enabled": flags.write_enabled,
                        "validation_logging_enabled": flags.validation_logging_enabled,
                        "percentage": flags.percentage,
                        "emergency_rollback": flags.emergency_rollback,
                        "updated_at": flags.updated_at,
                        "updated_by": flags.updated_by,
                    },
                )

    def _row_to_flags(self, row: Sequence[Any]) -> MigrationFlags:
        """
        Convert database row to MigrationFlags instance.

        SQLite returns naive timestamps (or plain strings from older
        schemas); both are normalised to UTC.
        """
        updated_at = row[5]
        if isinstance(updated_at, str):
            updated_at = datetime.fromisoformat(updated_at)
        if updated_at.tzinfo is None:
            updated_at = updated_at.replace(tzinfo=UTC)
        return MigrationFlags(
            read_enabled=bool(row[0]),
            write_enabled=bool(row[1]),
            validation_logging_enabled=bool(row[2]),
            percentage=int(row[3]),
            emergency_rollback=bool(row[4]),
            updated_at=updated_at,
            updated_by=row[6],
        )


__all__ = [
    "DEFAULT_FLAG_KEY",
    "FlagRepository",
    "InMemoryFlagRepository",
    "SQLAlchemyFlagRepository",
]
