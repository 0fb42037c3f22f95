"""
Connection handling helper for database operations.

Repositories and storage adapters accept either an AsyncEngine or an
AsyncConnection. `execute_with_connection` hides the difference:
an engine is opened (optionally inside a transaction), a connection is
used as-is.
"""

import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Context manager for executing database operations.

    Args:
        conn: Database connection or engine
        transactional: If True, wrap in transaction (begin).
                       If False, use bare connection (connect).
                       Only applies when conn is an AsyncEngine.

    Yields:
        AsyncConnection ready for execute() calls

    Example:
        >>> async with execute_with_connection(self._conn) as conn:
        ...     await conn.execute(query, params)

        >>> async with execute_with_connection(self._conn, transactional=False) as conn:
        ...     result = await conn.execute(select_query, params)
        ...     return result.fetchall()

    Note:
        When passing an existing AsyncConnection, the transactional parameter
        has no effect and the caller owns transaction management.
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        yield conn


def dialect_name(conn: AsyncConnection | AsyncEngine) -> str:
    """Name of the database dialect behind a connection or engine."""
    return conn.dialect.name


def quote_identifier(name: str) -> str:
    """
    Validate a table or column name before it is interpolated into SQL.

    Names may be schema-qualified ("schema.table").

    Raises:
        ValueError: If the name is not a plain SQL identifier.
    """
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name
