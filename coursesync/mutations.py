"""Optimistic mutation protocol shared by every create, update and delete.

Each mutation takes a suppression lease, pins the record it touches, applies
the change to the replica, then awaits the remote write. Success schedules a
settle task that waits for the store's write-visibility lag before releasing
the lease and reconciling; failure reverts straight away.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, Union

from .models import Collection, Course, Registration, Snapshot, SystemSettings, User, WriteOp
from .remote import RecordStore
from .replica import Mutation, RecordKey, ReplicaStore
from .scheduler import Lease, SuppressionGate

logger = logging.getLogger("coursesync.mutations")

Sleep = Callable[[float], Awaitable[None]]
_Previous = Optional[Union[User, Course, Registration, SystemSettings]]

_FIRST_CONFIRMATION_DELAY = 0.5


@dataclass(frozen=True)
class MutationOutcome:
    """Terminal result of an intent, suitable for showing to the user."""

    ok: bool
    message: str
    attempted: int = 1
    written: int = 1

    def to_dict(self) -> Dict[str, object]:
        return {
            "ok": self.ok,
            "message": self.message,
            "attempted": self.attempted,
            "written": self.written,
        }


def _observed(remote: Snapshot, mutation: Mutation) -> bool:
    if mutation.collection is Collection.SETTINGS:
        return remote.settings == mutation.record
    current = next(
        (record for record in remote.records(mutation.collection) if record.id == mutation.key[1]),  # type: ignore[attr-defined]
        None,
    )
    if mutation.op is WriteOp.DELETE:
        return current is None
    return current == mutation.record


class OptimisticMutator:
    """Runs mutations against the replica and the remote store."""

    def __init__(
        self,
        replica: ReplicaStore,
        store: RecordStore,
        gate: SuppressionGate,
        *,
        confirm_writes: bool = False,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._replica = replica
        self._store = store
        self._gate = gate
        self._confirm_writes = confirm_writes
        self._sleep = sleep
        self._settling: Set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        """Number of successful writes still waiting for their settle step."""

        return len(self._settling)

    async def run(
        self,
        mutation: Mutation,
        *,
        lag: float,
        success_message: str,
        failure_message: str,
    ) -> MutationOutcome:
        lease = self._gate.acquire(f"{mutation.op.value} {mutation.collection.value}")
        previous = self._begin(mutation)

        if await self._write(mutation):
            self._schedule_settle([mutation], lease, lag)
            return MutationOutcome(True, success_message)

        await self._revert([mutation], {mutation.key: previous}, lease)
        return MutationOutcome(False, failure_message, written=0)

    async def run_batch(
        self,
        mutations: Sequence[Mutation],
        *,
        lag: float,
        spacing: float,
        success_message: str,
        failure_message: str,
    ) -> MutationOutcome:
        """Write ``mutations`` one at a time, in order, ``spacing`` seconds apart.

        Items already written stay committed when a later one fails.
        """

        if not mutations:
            raise ValueError("A batch needs at least one mutation")

        lease = self._gate.acquire(f"batch of {len(mutations)} {mutations[0].collection.value}")
        previous = {mutation.key: self._begin(mutation) for mutation in mutations}

        written: List[Mutation] = []
        failed: List[Mutation] = []
        for index, mutation in enumerate(mutations):
            if index and spacing > 0:
                await self._sleep(spacing)
            if await self._write(mutation):
                written.append(mutation)
            else:
                failed.append(mutation)

        if failed:
            logger.warning(
                "Batch finished with %s of %s writes failed: %s",
                len(failed),
                len(mutations),
                ", ".join(mutation.key[1] for mutation in failed),
            )

        if not written:
            await self._revert(failed, previous, lease)
            return MutationOutcome(False, failure_message, attempted=len(mutations), written=0)

        if failed:
            await self._revert(failed, previous, None)
        self._schedule_settle(written, lease, lag)

        if failed:
            return MutationOutcome(
                False,
                f"{failure_message} ({len(written)}/{len(mutations)} saved)",
                attempted=len(mutations),
                written=len(written),
            )
        return MutationOutcome(True, success_message, attempted=len(mutations), written=len(written))

    async def drain(self) -> None:
        """Wait for every scheduled settle step to finish."""

        while self._settling:
            await asyncio.gather(*list(self._settling), return_exceptions=True)

    async def close(self) -> None:
        tasks = list(self._settling)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _begin(self, mutation: Mutation) -> _Previous:
        snapshot = self._replica.snapshot()
        if mutation.collection is Collection.SETTINGS:
            previous: _Previous = snapshot.settings
        else:
            previous = next(
                (record for record in snapshot.records(mutation.collection) if record.id == mutation.key[1]),  # type: ignore[attr-defined]
                None,
            )
        self._replica.pin(mutation.key)
        self._replica.apply_local(mutation)
        return previous

    async def _write(self, mutation: Mutation) -> bool:
        try:
            ok = await self._store.write(mutation.collection, mutation.wire_payload(), mutation.op)
        except Exception:
            logger.exception("Remote store adapter raised during %s %s", mutation.op.value, mutation.key[1])
            ok = False
        if ok:
            logger.info("Remote %s of %s %s accepted", mutation.op.value, mutation.collection.value, mutation.key[1])
        else:
            logger.warning("Remote %s of %s %s failed", mutation.op.value, mutation.collection.value, mutation.key[1])
        return bool(ok)

    async def _revert(
        self,
        mutations: Sequence[Mutation],
        previous: Dict[RecordKey, _Previous],
        lease: Optional[Lease],
    ) -> None:
        for mutation in mutations:
            self._replica.unpin(mutation.key)
        if lease is not None:
            self._gate.release(lease)

        if await self._replica.refresh(fallback=False) is not None:
            return
        # Store unreadable as well: undo locally so no half-applied change remains.
        for mutation in reversed(mutations):
            if not self._replica.is_pinned(mutation.key):
                self._replica.restore(mutation, previous.get(mutation.key))

    def _schedule_settle(self, mutations: Sequence[Mutation], lease: Lease, lag: float) -> None:
        task = asyncio.get_running_loop().create_task(self._settle(list(mutations), lease, lag))
        self._settling.add(task)
        task.add_done_callback(self._settling.discard)

    async def _settle(self, mutations: List[Mutation], lease: Lease, lag: float) -> None:
        observed: Optional[Snapshot] = None
        try:
            if self._confirm_writes:
                observed = await self._await_visibility(mutations, lag)
            else:
                await self._sleep(lag)
        finally:
            for mutation in mutations:
                self._replica.unpin(mutation.key)
            self._gate.release(lease)

        if observed is not None:
            self._replica.reconcile(observed)
        else:
            await self._replica.refresh(fallback=False)

    async def _await_visibility(self, mutations: Sequence[Mutation], budget: float) -> Optional[Snapshot]:
        """Poll with exponential backoff until every write is readable, within ``budget`` seconds."""

        delay = min(_FIRST_CONFIRMATION_DELAY, budget)
        waited = 0.0
        while waited < budget:
            await self._sleep(delay)
            waited += delay
            remote = await self._replica.fetch_remote()
            if remote is not None and all(_observed(remote, mutation) for mutation in mutations):
                logger.debug("Writes observed after %.2fs", waited)
                return remote
            delay = min(delay * 2, budget - waited)
        logger.info("Writes not observed within %.1fs; falling back to a plain refresh", budget)
        return None


__all__ = ["MutationOutcome", "OptimisticMutator"]
