"""
Tests for data path storage.

Tests cover:
- DataPathTables identifier validation
- InMemoryDataPathStorage counting, sampling, aggregate join, rollback-only
  transactions and failure injection
- SQLAlchemyDataPathStorage on SQLite with the same operations
"""

from __future__ import annotations

from typing import Any

import pytest
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError

from rolloutguard.repositories import (
    DataPathStorage,
    DataPathTables,
    InMemoryDataPathStorage,
    SQLAlchemyDataPathStorage,
)
from tests.conftest import skip_if_no_aiosqlite

# ============================================================================
# DataPathTables
# ============================================================================


class TestDataPathTables:
    def test_valid_names(self, tables: DataPathTables) -> None:
        assert tables.active_column == "active"

    def test_schema_qualified_names_allowed(self) -> None:
        DataPathTables(
            legacy="inventory.materials",
            migrated="inventory.materials_v2",
            audit="inventory.audit",
            join_table="inventory.suppliers",
            join_column="supplier_id",
        )

    @pytest.mark.parametrize("bad", ["materials;--", "1table", "a b", "x.y.z", ""])
    def test_invalid_names_rejected(self, bad: str) -> None:
        with pytest.raises(ValueError, match="Invalid SQL identifier"):
            DataPathTables(
                legacy=bad,
                migrated="m",
                audit="a",
                join_table="j",
                join_column="c",
            )


# ============================================================================
# InMemoryDataPathStorage
# ============================================================================


class TestInMemoryDataPathStorage:
    def test_implements_protocol(self, storage: InMemoryDataPathStorage) -> None:
        assert isinstance(storage, DataPathStorage)

    @pytest.mark.asyncio
    async def test_count_active_ignores_inactive_rows(
        self, storage: InMemoryDataPathStorage, tables: DataPathTables
    ) -> None:
        storage.add_rows(tables.legacy, [{"id": 500, "active": False}])

        assert await storage.count_active(tables.legacy) == 100

    @pytest.mark.asyncio
    async def test_set_active_counts(
        self, empty_storage: InMemoryDataPathStorage, tables: DataPathTables
    ) -> None:
        empty_storage.set_active_counts(legacy=40, migrated=7)

        assert await empty_storage.count_active(tables.legacy) == 40
        assert await empty_storage.count_active(tables.migrated) == 7

    @pytest.mark.asyncio
    async def test_select_sample_respects_limit(
        self, storage: InMemoryDataPathStorage, tables: DataPathTables
    ) -> None:
        rows = await storage.select_sample(tables.legacy, 10)

        assert len(rows) == 10
        assert rows[0]["id"] == 0

    @pytest.mark.asyncio
    async def test_unknown_table(self, storage: InMemoryDataPathStorage) -> None:
        with pytest.raises(LookupError):
            await storage.count_active("nope")

    @pytest.mark.asyncio
    async def test_aggregate_join(self, storage: InMemoryDataPathStorage) -> None:
        rows = await storage.run_aggregate_query(limit=25)

        assert len(rows) == 25
        assert all(row["joined_id"] == row["supplier_id"] for row in rows)

    @pytest.mark.asyncio
    async def test_transaction_always_rolls_back(
        self, storage: InMemoryDataPathStorage, tables: DataPathTables
    ) -> None:
        async def write(bound: Any) -> int:
            bound.add_rows(tables.migrated, [{"id": 999, "active": True}])
            return await bound.count_active(tables.migrated)

        inside = await storage.run_in_transaction(write)

        assert inside == 101
        assert await storage.count_active(tables.migrated) == 100

    @pytest.mark.asyncio
    async def test_transaction_rolls_back_on_error(
        self, storage: InMemoryDataPathStorage, tables: DataPathTables
    ) -> None:
        async def fail(bound: Any) -> None:
            bound.add_rows(tables.migrated, [{"id": 999, "active": True}])
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await storage.run_in_transaction(fail)

        assert await storage.count_active(tables.migrated) == 100

    @pytest.mark.asyncio
    async def test_writes_outside_transaction_survive_its_rollback(
        self, storage: InMemoryDataPathStorage, tables: DataPathTables
    ) -> None:
        async def write(bound: Any) -> int:
            bound.add_rows(tables.migrated, [{"id": 999, "active": True}])
            storage.add_rows(tables.audit, [{"id": 2, "action": "update"}])
            storage.set_active_counts(legacy=100, migrated=120)
            return await bound.count_active(tables.migrated)

        inside = await storage.run_in_transaction(write)

        assert inside == 101
        assert await storage.count_active(tables.migrated) == 120
        assert storage.rows(tables.audit)[-1] == {"id": 2, "action": "update"}

    @pytest.mark.asyncio
    async def test_error_injection(
        self, storage: InMemoryDataPathStorage, tables: DataPathTables
    ) -> None:
        storage.errors["select_sample"] = ConnectionError("down")

        with pytest.raises(ConnectionError):
            await storage.select_sample(tables.legacy, 1)
        assert storage.calls == ["select_sample"]


# ============================================================================
# SQLAlchemyDataPathStorage (SQLite)
# ============================================================================


async def create_tables(engine: Any, tables: DataPathTables) -> None:
    async with engine.begin() as conn:
        await conn.execute(text(f"CREATE TABLE {tables.join_table} (id INTEGER PRIMARY KEY)"))
        await conn.execute(
            text(
                f"CREATE TABLE {tables.legacy} ("
                f"id INTEGER PRIMARY KEY, active BOOLEAN NOT NULL, {tables.join_column} INTEGER)"
            )
        )
        await conn.execute(
            text(
                f"CREATE TABLE {tables.migrated} (id INTEGER PRIMARY KEY, active BOOLEAN NOT NULL)"
            )
        )
        await conn.execute(text(f"CREATE TABLE {tables.audit} (id INTEGER PRIMARY KEY)"))

        await conn.execute(
            text(f"INSERT INTO {tables.join_table} (id) VALUES (:id)"),
            [{"id": i} for i in range(3)],
        )
        await conn.execute(
            text(
                f"INSERT INTO {tables.legacy} (id, active, {tables.join_column}) "
                "VALUES (:id, :active, :ref)"
            ),
            [{"id": i, "active": i < 8, "ref": i % 3} for i in range(10)],
        )
        await conn.execute(
            text(f"INSERT INTO {tables.migrated} (id, active) VALUES (:id, :active)"),
            [{"id": i, "active": True} for i in range(4)],
        )


@pytest.mark.sqlite
@skip_if_no_aiosqlite
class TestSQLAlchemyDataPathStorage:
    @pytest.fixture
    def sql_storage(self, sqlite_engine: Any, tables: DataPathTables) -> SQLAlchemyDataPathStorage:
        return SQLAlchemyDataPathStorage(sqlite_engine, tables, enable_tracing=False)

    @pytest.mark.asyncio
    async def test_count_active(
        self, sqlite_engine: Any, sql_storage: SQLAlchemyDataPathStorage, tables: DataPathTables
    ) -> None:
        await create_tables(sqlite_engine, tables)

        assert await sql_storage.count_active(tables.legacy) == 8
        assert await sql_storage.count_active(tables.migrated) == 4

    @pytest.mark.asyncio
    async def test_select_sample(
        self, sqlite_engine: Any, sql_storage: SQLAlchemyDataPathStorage, tables: DataPathTables
    ) -> None:
        await create_tables(sqlite_engine, tables)

        rows = await sql_storage.select_sample(tables.legacy, 3)

        assert len(rows) == 3
        assert {"id", "active", "supplier_id"} <= set(rows[0])

    @pytest.mark.asyncio
    async def test_aggregate_query_only_active_rows(
        self, sqlite_engine: Any, sql_storage: SQLAlchemyDataPathStorage, tables: DataPathTables
    ) -> None:
        await create_tables(sqlite_engine, tables)

        rows = await sql_storage.run_aggregate_query(limit=100)

        assert len(rows) == 8
        assert all(row["joined_id"] == row["supplier_id"] for row in rows)

    @pytest.mark.asyncio
    async def test_missing_table_raises(
        self, sql_storage: SQLAlchemyDataPathStorage, tables: DataPathTables
    ) -> None:
        with pytest.raises(DBAPIError):
            await sql_storage.count_active(tables.legacy)

    @pytest.mark.asyncio
    async def test_transaction_always_rolls_back(
        self, sqlite_engine: Any, tables: DataPathTables
    ) -> None:
        await create_tables(sqlite_engine, tables)

        async with sqlite_engine.connect() as conn:
            storage = SQLAlchemyDataPathStorage(conn, tables, enable_tracing=False)

            async def write(bound: Any) -> int:
                await conn.execute(
                    text(f"INSERT INTO {tables.migrated} (id, active) VALUES (100, 1)")
                )
                return await bound.count_active(tables.migrated)

            inside = await storage.run_in_transaction(write)
            after = await storage.count_active(tables.migrated)

        assert inside == 5
        assert after == 4
