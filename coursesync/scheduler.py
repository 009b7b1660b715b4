"""Background refresh loop and the lease-based gate that pauses it around writes."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Dict, List, Optional

from .replica import ReconcileResult, ReplicaStore

logger = logging.getLogger("coursesync.scheduler")

DEFAULT_POLL_INTERVAL = 10.0


@dataclass
class Lease:
    """Held by one in-flight mutation while background refresh must stay paused."""

    id: int
    reason: str
    acquired_at: float
    released: bool = False


class SuppressionGate:
    """Counts outstanding leases; background refresh runs only when none are held.

    Overlapping mutations each take their own lease, so the gate reopens only
    after the last of them has settled.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._active: Dict[int, Lease] = {}

    @property
    def allowed(self) -> bool:
        return not self._active

    @property
    def active_count(self) -> int:
        return len(self._active)

    def active_leases(self) -> List[Lease]:
        return list(self._active.values())

    def acquire(self, reason: str) -> Lease:
        lease = Lease(id=next(self._ids), reason=reason, acquired_at=time.monotonic())
        self._active[lease.id] = lease
        logger.debug("Lease %s acquired for %s (%s active)", lease.id, reason, len(self._active))
        return lease

    def release(self, lease: Lease) -> None:
        if lease.released:
            return
        lease.released = True
        self._active.pop(lease.id, None)
        logger.debug(
            "Lease %s for %s released after %.2fs (%s active)",
            lease.id,
            lease.reason,
            time.monotonic() - lease.acquired_at,
            len(self._active),
        )


class SyncScheduler:
    """Periodically reconciles the replica unless a write holds the gate."""

    def __init__(
        self,
        replica: ReplicaStore,
        gate: SuppressionGate,
        *,
        interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        if interval <= 0:
            raise ValueError("Poll interval must be positive")
        self._replica = replica
        self._gate = gate
        self._interval = interval
        self._task: Optional[asyncio.Task[None]] = None
        self.ticks = 0
        self.skipped_ticks = 0

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> Optional[ReconcileResult]:
        """Run one background refresh; dropped entirely while the gate is closed."""

        self.ticks += 1
        if not self._gate.allowed:
            self.skipped_ticks += 1
            logger.debug("Background refresh skipped; %s write(s) in flight", self._gate.active_count)
            return None
        return await self._replica.refresh(fallback=False, still_allowed=lambda: self._gate.allowed)

    async def refresh_now(self) -> Optional[ReconcileResult]:
        """User-initiated refresh. Never suppressed."""

        return await self._replica.refresh()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Background sync started (every %.1fs)", self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        logger.info("Background sync stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.tick()
            except Exception:
                logger.exception("Background refresh failed")


__all__ = ["DEFAULT_POLL_INTERVAL", "Lease", "SuppressionGate", "SyncScheduler"]
