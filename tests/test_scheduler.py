from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from conftest import TODAY
from coursesync.models import Snapshot
from coursesync.remote import InMemoryRecordStore
from coursesync.replica import ReplicaStore
from coursesync.scheduler import SuppressionGate, SyncScheduler
from coursesync.seed import seed_snapshot


def _scheduler(store: InMemoryRecordStore, gate: Optional[SuppressionGate] = None) -> SyncScheduler:
    replica = ReplicaStore(store, fallback=lambda: seed_snapshot(TODAY))
    return SyncScheduler(replica, gate or SuppressionGate(), interval=10.0)


def test_gate_stays_closed_until_every_lease_is_released() -> None:
    gate = SuppressionGate()
    first = gate.acquire("add courses")
    second = gate.acquire("update users")

    gate.release(first)
    assert not gate.allowed
    assert [lease.reason for lease in gate.active_leases()] == ["update users"]

    gate.release(second)
    assert gate.allowed
    assert gate.active_count == 0


def test_releasing_a_lease_twice_is_harmless() -> None:
    gate = SuppressionGate()
    lease = gate.acquire("delete registrations")
    other = gate.acquire("add registrations")

    gate.release(lease)
    gate.release(lease)

    assert gate.active_count == 1
    gate.release(other)
    assert gate.allowed


def test_tick_is_dropped_while_a_write_holds_the_gate(seeded_store: InMemoryRecordStore) -> None:
    gate = SuppressionGate()
    scheduler = _scheduler(seeded_store, gate)
    lease = gate.acquire("add courses")

    assert asyncio.run(scheduler.tick()) is None
    assert seeded_store.fetch_count == 0
    assert scheduler.skipped_ticks == 1

    gate.release(lease)
    result = asyncio.run(scheduler.tick())
    assert result is not None and result.changed
    assert seeded_store.fetch_count == 1
    assert scheduler.ticks == 2


def test_tick_discards_fetch_that_raced_a_new_write() -> None:
    gate = SuppressionGate()

    class RacingStore(InMemoryRecordStore):
        async def fetch_all(self) -> Optional[Snapshot]:
            gate.acquire("add registrations")
            return await super().fetch_all()

    scheduler = _scheduler(RacingStore(seed_snapshot(TODAY)), gate)

    assert asyncio.run(scheduler.tick()) is None
    assert scheduler.skipped_ticks == 0


def test_foreground_refresh_ignores_the_gate(seeded_store: InMemoryRecordStore) -> None:
    gate = SuppressionGate()
    scheduler = _scheduler(seeded_store, gate)
    gate.acquire("update courses")

    result = asyncio.run(scheduler.refresh_now())

    assert result is not None
    assert seeded_store.fetch_count == 1


def test_background_loop_starts_and_stops(seeded_store: InMemoryRecordStore) -> None:
    scheduler = _scheduler(seeded_store)

    async def scenario() -> None:
        scheduler.start()
        scheduler.start()
        assert scheduler.running
        await scheduler.stop()
        assert not scheduler.running

    asyncio.run(scenario())


def test_interval_must_be_positive(seeded_store: InMemoryRecordStore) -> None:
    replica = ReplicaStore(seeded_store)
    with pytest.raises(ValueError):
        SyncScheduler(replica, SuppressionGate(), interval=0)
