from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path
from typing import Any, List, Mapping

from conftest import INSTANT_LAGS, TODAY, instant_config
from coursesync.models import Collection, RegistrationStatus, WriteOp
from coursesync.remote import InMemoryRecordStore
from coursesync.seed import seed_snapshot
from coursesync.service import TrainingService


def _service(store: InMemoryRecordStore, tmp_path: Path, **overrides: object) -> TrainingService:
    sleep = overrides.pop("sleep", asyncio.sleep)
    return TrainingService(
        store,
        config=instant_config(tmp_path, **overrides),
        today=lambda: TODAY,
        sleep=sleep,  # type: ignore[arg-type]
    )


class FlakyStore(InMemoryRecordStore):
    """Rejects the Nth write it receives."""

    def __init__(self, fail_on: int) -> None:
        super().__init__(seed_snapshot(TODAY))
        self._fail_on = fail_on
        self._writes = 0

    async def write(self, collection: Collection, record: Mapping[str, Any], op: WriteOp) -> bool:
        self._writes += 1
        if self._writes == self._fail_on:
            self.write_log.append((collection, op, dict(record)))
            return False
        return await super().write(collection, record, op)


class BlockingStore(InMemoryRecordStore):
    """Holds every write until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__(seed_snapshot(TODAY))
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def write(self, collection: Collection, record: Mapping[str, Any], op: WriteOp) -> bool:
        self.started.set()
        await self.release.wait()
        return await super().write(collection, record, op)


def test_failed_cancellation_reappears_after_revert(seeded_store: InMemoryRecordStore, tmp_path: Path) -> None:
    service = _service(seeded_store, tmp_path)
    seeded_store.fail_writes(Collection.REGISTRATIONS, WriteOp.DELETE)

    async def scenario():
        await service.start()
        await service.login("asm_hanoi", "password")
        outcome = await service.cancel_registration("r_mock_1", confirmed=True)
        await service.close()
        return outcome

    outcome = asyncio.run(scenario())

    assert not outcome.ok
    assert outcome.written == 0
    assert service.snapshot().find_registration("r_mock_1") is not None
    assert service.gate.allowed
    assert not service.replica.is_pinned((Collection.REGISTRATIONS, "r_mock_1"))


def test_failed_write_restores_locally_when_store_is_unreadable(
    seeded_store: InMemoryRecordStore, tmp_path: Path
) -> None:
    service = _service(seeded_store, tmp_path)

    async def scenario():
        await service.start()
        await service.login("admin", "admin")
        seeded_store.available = False
        outcome = await service.create_course(title="Offline course", start_date="2026-04-01")
        await service.close()
        return outcome

    outcome = asyncio.run(scenario())

    assert not outcome.ok
    assert [course.id for course in service.snapshot().courses] == ["c1", "c2", "c3", "c4"]
    assert service.gate.allowed


def test_batch_writes_follow_selection_order(seeded_store: InMemoryRecordStore, tmp_path: Path) -> None:
    service = _service(seeded_store, tmp_path)

    async def scenario():
        await service.start()
        await service.login("asm_hcm", "password")
        outcome = await service.submit_registrations(["c2", "c1"])
        await service.mutator.drain()
        await service.close()
        return outcome

    outcome = asyncio.run(scenario())

    assert outcome.ok
    assert (outcome.attempted, outcome.written) == (2, 2)
    adds = [row for collection, op, row in seeded_store.write_log if op is WriteOp.ADD]
    assert [row["courseId"] for row in adds] == ["c2", "c1"]
    assert {row["status"] for row in adds} == {"pending"}
    assert {row["asmId"] for row in adds} == {"u3"}

    mine = [r for r in service.snapshot().registrations if r.requester_id == "u3" and r.course_id in {"c1", "c2"}]
    assert len(mine) == 2
    assert all(r.status is RegistrationStatus.PENDING for r in mine)
    assert service.gate.allowed


def test_batch_keeps_items_written_before_a_failure(tmp_path: Path) -> None:
    store = FlakyStore(fail_on=2)
    service = _service(store, tmp_path)

    async def scenario():
        await service.start()
        await service.login("asm_hcm", "password")
        outcome = await service.submit_registrations(["c1", "c2"])
        await service.mutator.drain()
        await service.close()
        return outcome

    outcome = asyncio.run(scenario())

    assert not outcome.ok
    assert (outcome.attempted, outcome.written) == (2, 1)
    assert "(1/2 saved)" in outcome.message
    mine = {r.course_id for r in service.snapshot().registrations if r.requester_id == "u3"}
    assert "c1" in mine
    assert "c2" not in mine
    assert service.gate.allowed


def test_batch_spacing_only_between_writes(seeded_store: InMemoryRecordStore, tmp_path: Path) -> None:
    delays: List[float] = []

    async def sleep(delay: float) -> None:
        delays.append(delay)
        await asyncio.sleep(0)

    service = _service(seeded_store, tmp_path, batch_spacing=2.0, sleep=sleep)

    async def scenario():
        await service.start()
        await service.login("asm_hcm", "password")
        await service.submit_registrations(["c1", "c2"])
        await service.mutator.drain()
        await service.close()

    asyncio.run(scenario())

    assert delays.count(2.0) == 1
    assert delays[0] == 2.0


def test_gate_closed_until_write_settles(tmp_path: Path) -> None:
    store = BlockingStore()
    service = _service(store, tmp_path)
    observed = {}

    async def scenario():
        await service.start()
        await service.login("admin", "admin")
        task = asyncio.create_task(service.create_course(title="Leadership", start_date="2026-05-01"))
        await store.started.wait()
        observed["allowed_during_write"] = service.gate.allowed
        observed["visible_locally"] = any(c.title == "Leadership" for c in service.snapshot().courses)

        await service.refresh()
        observed["survives_refresh"] = any(c.title == "Leadership" for c in service.snapshot().courses)

        store.release.set()
        outcome = await task
        await service.mutator.drain()
        observed["allowed_after_settle"] = service.gate.allowed
        await service.close()
        return outcome

    outcome = asyncio.run(scenario())

    assert outcome.ok
    assert observed == {
        "allowed_during_write": False,
        "visible_locally": True,
        "survives_refresh": True,
        "allowed_after_settle": True,
    }


def test_confirmed_writes_stop_polling_once_visible(seeded_store: InMemoryRecordStore, tmp_path: Path) -> None:
    delays: List[float] = []

    async def sleep(delay: float) -> None:
        delays.append(delay)
        await asyncio.sleep(0)

    service = _service(
        seeded_store,
        tmp_path,
        confirm_writes=True,
        visibility_lag=replace(INSTANT_LAGS, course=8.0),
        sleep=sleep,
    )

    async def scenario():
        await service.start()
        await service.login("admin", "admin")
        outcome = await service.decide_course("c4", approve=True)
        await service.mutator.drain()
        await service.close()
        return outcome

    outcome = asyncio.run(scenario())

    assert outcome.ok
    assert delays == [0.5]
    assert service.snapshot().find_course("c4").approval_status.value == "approved"
    assert service.gate.allowed


def test_cancelled_intent_writes_nothing(seeded_store: InMemoryRecordStore, tmp_path: Path) -> None:
    service = _service(seeded_store, tmp_path)

    async def scenario():
        await service.start()
        await service.login("admin", "admin")
        outcome = await service.delete_course("c1", confirmed=False)
        await service.close()
        return outcome

    outcome = asyncio.run(scenario())

    assert not outcome.ok
    assert outcome.attempted == 0
    assert seeded_store.write_log == []
    assert service.snapshot().find_course("c1") is not None
