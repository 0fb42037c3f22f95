"""
Basic Usage Example

This example walks a migration rollout end to end against in-memory
storage:
- Wiring the flag store, controller and health monitor
- Advancing through the first phases with a short soak window
- Subscribing to monitoring events
- Watching a soak failure revert the rollout

Run with: python examples/basic_usage.py
"""

import asyncio
import logging

from rolloutguard import (
    AlertCreated,
    DataPathTables,
    FlagStore,
    HealthMonitor,
    InMemoryDataPathStorage,
    InMemoryFlagRepository,
    MonitorEventPublisher,
    MonitoringConfig,
    RolloutConfig,
    RolloutController,
    RolloutError,
)

# =============================================================================
# Step 1: Describe the data paths
# =============================================================================
# The legacy table, its migrated counterpart, the audit table and the table
# the aggregate probe joins against.

TABLES = DataPathTables(
    legacy="materials",
    migrated="materials_migration",
    audit="materials_audit",
    join_table="suppliers",
    join_column="supplier_id",
)


def seed(storage: InMemoryDataPathStorage) -> None:
    storage.add_rows(TABLES.join_table, [{"id": i} for i in range(5)])
    storage.add_rows(
        TABLES.legacy,
        [{"id": i, "active": True, "supplier_id": i % 5} for i in range(200)],
    )
    storage.add_rows(TABLES.migrated, [{"id": i, "active": True} for i in range(200)])
    storage.add_rows(TABLES.audit, [{"id": 1, "action": "insert"}])


async def main():
    logging.basicConfig(level=logging.WARNING)

    print("=" * 60)
    print("rolloutguard - Basic Usage Example")
    print("=" * 60)

    # =========================================================================
    # Step 2: Wire the components
    # =========================================================================
    storage = InMemoryDataPathStorage(TABLES, enable_tracing=False)
    seed(storage)
    flag_store = FlagStore(InMemoryFlagRepository(), enable_tracing=False)

    publisher = MonitorEventPublisher(enable_tracing=False)
    publisher.subscribe(AlertCreated, lambda e: print(f"   ALERT: {e.alert.message}"))

    controller = RolloutController(
        flag_store,
        storage,
        config=RolloutConfig(soak_duration_seconds=0.2, poll_interval_seconds=0.05),
        enable_tracing=False,
    )
    monitor = HealthMonitor(
        flag_store,
        storage,
        config=MonitoringConfig(health_check_interval_seconds=0.1),
        publisher=publisher,
        enable_tracing=False,
    )

    # =========================================================================
    # Step 3: Roll forward
    # =========================================================================
    print("\n1. Starting monitoring and rollout...")
    await monitor.start()
    await controller.start_rollout()

    print("\n2. Advancing through the first two phases:")
    for _ in range(2):
        phase = await controller.advance_to_next_phase()
        if phase is not None:
            print(f"   Now at {phase.percentage}%: {phase.description}")

    health = monitor.get_system_health()
    if health is not None:
        print(f"\n3. Monitor reports {health.status.value} ({len(health.active_alerts)} alerts)")

    # =========================================================================
    # Step 4: Break the data paths and watch the rollback
    # =========================================================================
    print("\n4. Simulating a database outage during the next soak...")
    outage = ConnectionError("database unavailable")
    for operation in ("select_sample", "count_active", "aggregate"):
        storage.errors[operation] = outage

    try:
        await controller.advance_to_next_phase()
    except RolloutError as e:
        print(f"   Rollout reverted: {e}")

    flags = await flag_store.get_flags()
    print(f"   Percentage: {flags.percentage}%, emergency: {flags.emergency_rollback}")
    print(f"   Controller state: {controller.state.value}")

    await monitor.stop()
    controller.stop_monitoring()

    print("\n" + "=" * 60)
    print("Example completed successfully!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
