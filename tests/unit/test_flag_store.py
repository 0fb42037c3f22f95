"""
Unit tests for FlagStore.

Tests cover:
- Fail-closed reads (repository errors return safe defaults, never raise)
- First access persists the safe defaults
- TTL caching with an injected clock and invalidation on writes
- update_flags validation, unknown fields and persistence errors
- Idempotent emergency rollback
- Routing helpers
"""

from __future__ import annotations

import asyncio

import pytest

from rolloutguard.exceptions import FlagPersistenceError, InvalidFlagStateError
from rolloutguard.flags import EMERGENCY_ACTOR, FlagStore
from rolloutguard.models import MigrationFlags
from rolloutguard.repositories import InMemoryFlagRepository
from tests.fixtures import FakeClock, flags_at

# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def cached_store(flag_repo: InMemoryFlagRepository, clock: FakeClock) -> FlagStore:
    """FlagStore with a 30 second TTL driven by the fake clock."""
    return FlagStore(flag_repo, cache_ttl_seconds=30.0, clock=clock, enable_tracing=False)


# =============================================================================
# Reads
# =============================================================================


class TestGetFlags:
    @pytest.mark.asyncio
    async def test_first_access_persists_safe_defaults(
        self, flag_store: FlagStore, flag_repo: InMemoryFlagRepository
    ) -> None:
        flags = await flag_store.get_flags()

        assert flags.percentage == 0
        assert not flags.read_enabled
        assert flag_repo.stored is not None
        assert flag_repo.save_count == 1

    @pytest.mark.asyncio
    async def test_returns_persisted_record(self) -> None:
        repo = InMemoryFlagRepository(initial=flags_at(25), enable_tracing=False)
        store = FlagStore(repo, enable_tracing=False)

        flags = await store.get_flags()

        assert flags.percentage == 25
        assert repo.save_count == 0

    @pytest.mark.asyncio
    async def test_load_failure_returns_safe_defaults(
        self, flag_repo: InMemoryFlagRepository, flag_store: FlagStore
    ) -> None:
        await flag_repo.save(flags_at(50))
        flag_repo.load_error = ConnectionError("db down")

        flags = await flag_store.get_flags()

        assert flags.read_enabled is False
        assert flags.write_enabled is False
        assert flags.percentage == 0

    @pytest.mark.asyncio
    async def test_safe_defaults_are_not_cached(
        self, flag_repo: InMemoryFlagRepository, cached_store: FlagStore
    ) -> None:
        await flag_repo.save(flags_at(10))
        flag_repo.load_error = ConnectionError("db down")
        assert (await cached_store.get_flags()).percentage == 0

        flag_repo.load_error = None

        assert (await cached_store.get_flags()).percentage == 10

    @pytest.mark.asyncio
    async def test_initialize_failure_returns_safe_defaults(
        self, flag_repo: InMemoryFlagRepository, flag_store: FlagStore
    ) -> None:
        flag_repo.save_error = ConnectionError("read only")

        flags = await flag_store.get_flags()

        assert flags == MigrationFlags.safe_defaults().model_copy(
            update={"updated_at": flags.updated_at}
        )


class TestCache:
    @pytest.mark.asyncio
    async def test_served_from_cache_within_ttl(
        self, flag_repo: InMemoryFlagRepository, cached_store: FlagStore, clock: FakeClock
    ) -> None:
        await flag_repo.save(flags_at(10))

        await cached_store.get_flags()
        clock.advance(29)
        await cached_store.get_flags()

        assert flag_repo.load_count == 1

    @pytest.mark.asyncio
    async def test_reloaded_after_ttl(
        self, flag_repo: InMemoryFlagRepository, cached_store: FlagStore, clock: FakeClock
    ) -> None:
        await flag_repo.save(flags_at(10))
        await cached_store.get_flags()

        await flag_repo.save(flags_at(25))
        clock.advance(31)

        assert (await cached_store.get_flags()).percentage == 25
        assert flag_repo.load_count == 2

    @pytest.mark.asyncio
    async def test_external_change_visible_after_clear_cache(
        self, flag_repo: InMemoryFlagRepository, cached_store: FlagStore
    ) -> None:
        await flag_repo.save(flags_at(10))
        await cached_store.get_flags()
        await flag_repo.save(flags_at(25))

        assert (await cached_store.get_flags()).percentage == 10
        await cached_store.clear_cache()
        assert (await cached_store.get_flags()).percentage == 25

    @pytest.mark.asyncio
    async def test_update_invalidates_cache(
        self, flag_repo: InMemoryFlagRepository, cached_store: FlagStore
    ) -> None:
        await flag_repo.save(flags_at(10))
        await cached_store.get_flags()

        await cached_store.update_flags("ops", percentage=25)

        assert (await cached_store.get_flags()).percentage == 25

    @pytest.mark.asyncio
    async def test_load_started_before_write_does_not_recache_stale_record(
        self, flag_repo: InMemoryFlagRepository, cached_store: FlagStore
    ) -> None:
        await flag_repo.save(flags_at(10))
        release = asyncio.Event()
        original_load = flag_repo.load
        slow_loads = 0

        async def slow_load() -> MigrationFlags | None:
            nonlocal slow_loads
            record = await original_load()
            if slow_loads == 0:
                slow_loads += 1
                await release.wait()
            return record

        flag_repo.load = slow_load  # type: ignore[method-assign]

        reader = asyncio.create_task(cached_store.get_flags())
        await asyncio.sleep(0)
        await cached_store.update_flags("ops", percentage=25)
        release.set()

        assert (await reader).percentage == 10
        assert (await cached_store.get_flags()).percentage == 25


# =============================================================================
# Routing helpers
# =============================================================================


class TestRoutingHelpers:
    @pytest.mark.asyncio
    async def test_helpers_follow_flags(self) -> None:
        repo = InMemoryFlagRepository(initial=flags_at(50), enable_tracing=False)
        store = FlagStore(repo, enable_tracing=False)

        assert await store.is_read_from_migrated()
        assert await store.is_write_to_migrated()
        assert await store.effective_percentage() == 50
        assert await store.is_validation_enabled()

    @pytest.mark.asyncio
    async def test_emergency_flag_overrides_helpers(self) -> None:
        # Bypasses FlagStore validation to simulate a hand-edited record.
        record = MigrationFlags.model_construct(
            **{**flags_at(50).model_dump(), "emergency_rollback": True}
        )
        repo = InMemoryFlagRepository(initial=record, enable_tracing=False)
        store = FlagStore(repo, enable_tracing=False)

        assert not await store.is_read_from_migrated()
        assert not await store.is_write_to_migrated()
        assert await store.effective_percentage() == 0
        assert not await store.is_validation_enabled()

    def test_validate_flags(self) -> None:
        assert FlagStore.validate_flags(flags_at(25))
        assert not FlagStore.validate_flags(MigrationFlags(write_enabled=True))
        assert not FlagStore.validate_flags(
            MigrationFlags(emergency_rollback=True, read_enabled=True)
        )


# =============================================================================
# Writes
# =============================================================================


class TestUpdateFlags:
    @pytest.mark.asyncio
    async def test_merges_changes_and_records_actor(
        self, flag_repo: InMemoryFlagRepository, flag_store: FlagStore
    ) -> None:
        saved = await flag_store.update_flags("ops@example.com", read_enabled=True, percentage=10)

        assert saved.read_enabled
        assert saved.percentage == 10
        assert saved.updated_by == "ops@example.com"
        assert flag_repo.stored == saved

    @pytest.mark.asyncio
    async def test_write_without_read_rejected_and_nothing_written(
        self, flag_repo: InMemoryFlagRepository, flag_store: FlagStore
    ) -> None:
        with pytest.raises(InvalidFlagStateError) as exc_info:
            await flag_store.update_flags("ops", write_enabled=True)

        assert exc_info.value.violations == ["write_enabled requires read_enabled"]
        assert flag_repo.save_count == 0

    @pytest.mark.asyncio
    async def test_cannot_enable_reads_during_emergency(self, flag_store: FlagStore) -> None:
        await flag_store.emergency_rollback()

        with pytest.raises(InvalidFlagStateError):
            await flag_store.update_flags("ops", read_enabled=True)

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, flag_store: FlagStore) -> None:
        with pytest.raises(ValueError, match="rollout_speed"):
            await flag_store.update_flags("ops", rollout_speed=2)

    @pytest.mark.asyncio
    async def test_out_of_range_percentage_rejected(self, flag_store: FlagStore) -> None:
        with pytest.raises(ValueError):
            await flag_store.update_flags("ops", percentage=150)

    @pytest.mark.asyncio
    async def test_save_failure_raises_persistence_error(
        self, flag_repo: InMemoryFlagRepository, flag_store: FlagStore
    ) -> None:
        flag_repo.save_error = ConnectionError("db down")

        with pytest.raises(FlagPersistenceError, match="db down"):
            await flag_store.update_flags("ops", read_enabled=True, percentage=10)

    @pytest.mark.asyncio
    async def test_load_failure_raises_persistence_error(
        self, flag_repo: InMemoryFlagRepository, flag_store: FlagStore
    ) -> None:
        flag_repo.load_error = ConnectionError("db down")

        with pytest.raises(FlagPersistenceError):
            await flag_store.update_flags("ops", percentage=10, read_enabled=True)

    @pytest.mark.asyncio
    async def test_concurrent_updates_serialize(
        self, flag_repo: InMemoryFlagRepository, flag_store: FlagStore
    ) -> None:
        await asyncio.gather(
            flag_store.update_flags("a", read_enabled=True, percentage=10),
            flag_store.update_flags("b", validation_logging_enabled=False),
        )

        stored = flag_repo.stored
        assert stored is not None
        assert stored.read_enabled
        assert stored.percentage == 10
        assert stored.validation_logging_enabled is False


class TestEmergencyRollback:
    @pytest.mark.asyncio
    async def test_routes_everything_to_legacy(self) -> None:
        repo = InMemoryFlagRepository(initial=flags_at(75), enable_tracing=False)
        store = FlagStore(repo, enable_tracing=False)

        flags = await store.emergency_rollback()

        assert flags.emergency_rollback
        assert not flags.read_enabled
        assert not flags.write_enabled
        assert flags.percentage == 0
        assert flags.updated_by == EMERGENCY_ACTOR
        assert repo.stored == flags

    @pytest.mark.asyncio
    async def test_idempotent(self) -> None:
        repo = InMemoryFlagRepository(initial=flags_at(75), enable_tracing=False)
        store = FlagStore(repo, enable_tracing=False)

        first = await store.emergency_rollback()
        second = await store.emergency_rollback("someone_else")

        assert second == first
        assert repo.save_count == 1

    @pytest.mark.asyncio
    async def test_save_failure_raises(self, flag_repo: InMemoryFlagRepository) -> None:
        await flag_repo.save(flags_at(50))
        flag_repo.save_error = ConnectionError("db down")
        store = FlagStore(flag_repo, enable_tracing=False)

        with pytest.raises(FlagPersistenceError):
            await store.emergency_rollback()

    @pytest.mark.asyncio
    async def test_reads_observe_rollback_immediately(
        self, flag_repo: InMemoryFlagRepository, cached_store: FlagStore
    ) -> None:
        await flag_repo.save(flags_at(50))
        assert await cached_store.is_read_from_migrated()

        await cached_store.emergency_rollback()

        assert not await cached_store.is_read_from_migrated()
