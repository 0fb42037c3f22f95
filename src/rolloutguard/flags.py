"""
FlagStore - cached, fail-closed access to the migration flag record.

Request routing asks the store on every request whether reads or writes
should go to the migrated path. The store keeps the record in a short TTL
cache and, if the repository cannot be reached, answers with the safe
defaults (everything routed to the legacy path) instead of raising.

Writes are the opposite: they go straight to the repository, validate the
flag invariants first, and raise on failure so that the rollout controller
knows the change did not happen.

Usage:
    >>> from rolloutguard.flags import FlagStore
    >>> from rolloutguard.repositories import SQLAlchemyFlagRepository
    >>>
    >>> store = FlagStore(SQLAlchemyFlagRepository(engine))
    >>>
    >>> if await store.is_read_from_migrated():
    ...     rows = await read_migrated()
    >>>
    >>> await store.update_flags("ops@example.com", read_enabled=True, percentage=10)
    >>> await store.emergency_rollback()
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from rolloutguard.exceptions import FlagPersistenceError, InvalidFlagStateError
from rolloutguard.models import MigrationFlags
from rolloutguard.observability import Tracer, create_tracer
from rolloutguard.observability.attributes import (
    ATTR_FLAGS_ACTOR,
    ATTR_FLAGS_CACHE_HIT,
    ATTR_FLAGS_EMERGENCY,
    ATTR_ROLLOUT_PERCENTAGE,
)
from rolloutguard.repositories.flags import FlagRepository

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 30.0

EMERGENCY_ACTOR = "emergency_system"

UPDATABLE_FIELDS = frozenset(
    {
        "read_enabled",
        "write_enabled",
        "validation_logging_enabled",
        "percentage",
        "emergency_rollback",
    }
)

_ROLLED_BACK: dict[str, Any] = {
    "emergency_rollback": True,
    "read_enabled": False,
    "write_enabled": False,
    "percentage": 0,
}


class FlagStore:
    """
    Cached access to the migration flag record.

    The store is constructed explicitly and shared by the rollout
    controller, the health monitor and request routing.

    Example:
        >>> store = FlagStore(InMemoryFlagRepository(), cache_ttl_seconds=5.0)
        >>> flags = await store.get_flags()
        >>> flags.percentage
        0
    """

    def __init__(
        self,
        repository: FlagRepository,
        *,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the store.

        Args:
            repository: Where the record is persisted
            cache_ttl_seconds: How long a loaded record is served from cache
            clock: Monotonic clock used for cache expiry
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._repository = repository
        self._cache_ttl = cache_ttl_seconds
        self._clock = clock
        self._cache: tuple[MigrationFlags, float] | None = None
        self._cache_lock = asyncio.Lock()
        self._update_lock = asyncio.Lock()
        # Bumped on every invalidation so that a load started before a
        # write cannot re-cache the record it read.
        self._generation = 0

    @property
    def repository(self) -> FlagRepository:
        return self._repository

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_flags(self) -> MigrationFlags:
        """
        Get the current flag record.

        Never raises. If the repository fails, the error is logged and the
        safe defaults are returned without being cached, so the next call
        retries the repository.

        Returns:
            The persisted record, or the safe defaults.
        """
        with self._tracer.span("rolloutguard.flag_store.get_flags") as span:
            cached = await self._get_from_cache()
            if cached is not None:
                if span:
                    span.set_attribute(ATTR_FLAGS_CACHE_HIT, True)
                return cached
            if span:
                span.set_attribute(ATTR_FLAGS_CACHE_HIT, False)

            generation = self._generation
            try:
                flags = await self._repository.load()
                if flags is None:
                    flags = await self._initialize()
            except Exception as e:
                logger.error(
                    "Failed to load migration flags, falling back to safe defaults: %s",
                    e,
                    exc_info=True,
                )
                return MigrationFlags.safe_defaults()

            await self._set_cache(flags, generation)
            return flags

    async def _initialize(self) -> MigrationFlags:
        """Persist the safe defaults the first time the record is accessed."""
        async with self._update_lock:
            existing = await self._repository.load()
            if existing is not None:
                return existing
            defaults = MigrationFlags.safe_defaults()
            await self._repository.save(defaults)
            logger.info("Initialized migration flags with safe defaults")
            return defaults

    async def is_read_from_migrated(self) -> bool:
        """Whether reads should go to the migrated path."""
        flags = await self.get_flags()
        return flags.read_enabled and not flags.emergency_rollback

    async def is_write_to_migrated(self) -> bool:
        """Whether writes should go to the migrated path."""
        flags = await self.get_flags()
        return flags.write_enabled and not flags.emergency_rollback

    async def effective_percentage(self) -> int:
        """Share of traffic for the migrated path, 0 during an emergency rollback."""
        flags = await self.get_flags()
        return 0 if flags.emergency_rollback else flags.percentage

    async def is_validation_enabled(self) -> bool:
        """Whether legacy and migrated reads should be compared in logs."""
        flags = await self.get_flags()
        return flags.validation_logging_enabled and not flags.emergency_rollback

    @staticmethod
    def validate_flags(flags: MigrationFlags) -> bool:
        """
        Check the flag invariants.

        Args:
            flags: Record to check.

        Returns:
            False for writes without reads, or an emergency rollback with
            any migrated path still enabled.
        """
        return flags.is_valid

    # =========================================================================
    # Writes
    # =========================================================================

    async def update_flags(self, updated_by: str, **changes: Any) -> MigrationFlags:
        """
        Merge changes into the persisted record and save it.

        Args:
            updated_by: Actor recorded on the new record.
            **changes: Field values to change.

        Returns:
            The record that was saved.

        Raises:
            ValueError: If a change names an unknown field or an out-of-range
                value.
            InvalidFlagStateError: If the merged record breaks an invariant.
                Nothing is written.
            FlagPersistenceError: If the repository fails.
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown migration flag field(s): {', '.join(sorted(unknown))}")

        with self._tracer.span(
            "rolloutguard.flag_store.update_flags",
            {
                ATTR_FLAGS_ACTOR: updated_by,
                ATTR_ROLLOUT_PERCENTAGE: changes.get("percentage"),
            },
        ):
            async with self._update_lock:
                current = await self._load_for_update()
                return await self._apply(current, changes, updated_by)

    async def emergency_rollback(self, updated_by: str = EMERGENCY_ACTOR) -> MigrationFlags:
        """
        Route everything back to the legacy path.

        Idempotent: if the persisted record is already rolled back nothing
        is written.

        Args:
            updated_by: Actor recorded on the new record.

        Returns:
            The rolled-back record.

        Raises:
            FlagPersistenceError: If the repository fails.
        """
        with self._tracer.span(
            "rolloutguard.flag_store.emergency_rollback",
            {ATTR_FLAGS_ACTOR: updated_by, ATTR_FLAGS_EMERGENCY: True},
        ):
            async with self._update_lock:
                current = await self._load_for_update()
                if all(getattr(current, k) == v for k, v in _ROLLED_BACK.items()):
                    logger.info("Emergency rollback already in effect, nothing to do")
                    return current
                flags = await self._apply(current, _ROLLED_BACK, updated_by)
            logger.critical(
                "EMERGENCY ROLLBACK: all traffic routed to legacy path (by %s)",
                updated_by,
            )
            return flags

    async def _load_for_update(self) -> MigrationFlags:
        await self._invalidate_cache()
        try:
            current = await self._repository.load()
        except Exception as e:
            raise FlagPersistenceError(f"Failed to load migration flags: {e}") from e
        return current if current is not None else MigrationFlags.safe_defaults()

    async def _apply(
        self,
        current: MigrationFlags,
        changes: dict[str, Any],
        updated_by: str,
    ) -> MigrationFlags:
        data = current.model_dump()
        data.update(changes)
        data["updated_at"] = datetime.now(UTC)
        data["updated_by"] = updated_by
        flags = MigrationFlags.model_validate(data)

        violations = flags.violations()
        if violations:
            raise InvalidFlagStateError(violations)

        try:
            await self._repository.save(flags)
        except Exception as e:
            raise FlagPersistenceError(f"Failed to save migration flags: {e}") from e
        finally:
            await self._invalidate_cache()

        logger.info(
            "Migration flags updated by %s: read=%s write=%s percentage=%d emergency=%s",
            updated_by,
            flags.read_enabled,
            flags.write_enabled,
            flags.percentage,
            flags.emergency_rollback,
        )
        return flags

    # =========================================================================
    # Cache management
    # =========================================================================

    async def _get_from_cache(self) -> MigrationFlags | None:
        async with self._cache_lock:
            if self._cache is None:
                return None
            flags, cached_at = self._cache
            if self._clock() - cached_at > self._cache_ttl:
                self._cache = None
                return None
            return flags

    async def _set_cache(self, flags: MigrationFlags, generation: int) -> None:
        async with self._cache_lock:
            if generation == self._generation:
                self._cache = (flags, self._clock())

    async def _invalidate_cache(self) -> None:
        async with self._cache_lock:
            self._generation += 1
            self._cache = None

    async def clear_cache(self) -> None:
        """
        Drop the cached record.

        The next read goes to the repository.
        """
        await self._invalidate_cache()


__all__ = [
    "DEFAULT_CACHE_TTL_SECONDS",
    "EMERGENCY_ACTOR",
    "UPDATABLE_FIELDS",
    "FlagStore",
]
