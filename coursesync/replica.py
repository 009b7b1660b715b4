"""In-memory replica of the remote collections and its reconciliation rules."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple, Union

from .models import (
    RECORD_COLLECTIONS,
    Collection,
    Course,
    Registration,
    Snapshot,
    SystemSettings,
    User,
    WriteOp,
)
from .remote import RecordStore
from .seed import seed_snapshot

logger = logging.getLogger("coursesync.replica")

Record = Union[User, Course, Registration]
RecordKey = Tuple[Collection, str]

SETTINGS_KEY: RecordKey = (Collection.SETTINGS, "settings")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Mutation:
    """A single local change mirrored by one remote write."""

    collection: Collection
    op: WriteOp
    record: Union[Record, SystemSettings]

    def __post_init__(self) -> None:
        if self.collection is Collection.SETTINGS:
            if not isinstance(self.record, SystemSettings) or self.op is WriteOp.DELETE:
                raise ValueError("Settings mutations must replace a SystemSettings record")

    @property
    def key(self) -> RecordKey:
        if self.collection is Collection.SETTINGS:
            return SETTINGS_KEY
        return (self.collection, self.record.id)  # type: ignore[union-attr]

    def wire_payload(self) -> Dict[str, object]:
        """Body sent to the remote store for this change."""

        if isinstance(self.record, SystemSettings):
            return self.record.popup.to_dict()
        if self.op is WriteOp.DELETE:
            return {"id": self.record.id}
        return self.record.to_dict()


@dataclass
class CollectionDiff:
    added: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated or self.removed)


@dataclass
class ReconcileResult:
    """Per-record changes applied by one reconciliation."""

    collections: Dict[Collection, CollectionDiff] = field(default_factory=dict)
    settings_changed: bool = False

    @property
    def changed(self) -> bool:
        return self.settings_changed or any(diff.changed for diff in self.collections.values())

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            collection.value: {
                "added": list(diff.added),
                "updated": list(diff.updated),
                "removed": list(diff.removed),
            }
            for collection, diff in self.collections.items()
        }
        payload["settings_changed"] = self.settings_changed
        return payload


class ReplicaStore:
    """Holds the session's copy of users, courses, registrations and settings.

    The remote store is authoritative: reconciliation converges every record
    to its remote version, except records pinned by a write still in flight.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        fallback: Callable[[], Snapshot] = seed_snapshot,
    ) -> None:
        self._store = store
        self._fallback = fallback
        self._snapshot = Snapshot(settings=SystemSettings())
        self._pins: Dict[RecordKey, int] = {}
        self._connected = False
        self._empty_remote = False
        self._last_synced_at: Optional[datetime] = None

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def empty_remote(self) -> bool:
        """``True`` when the last successful fetch returned no users at all."""

        return self._empty_remote

    @property
    def last_synced_at(self) -> Optional[datetime]:
        return self._last_synced_at

    def snapshot(self) -> Snapshot:
        return self._snapshot

    # ------------------------------------------------------------------
    # Remote reads
    # ------------------------------------------------------------------
    async def load(self) -> Snapshot:
        """Fetch everything, falling back to seed data when the store is unreachable."""

        await self.refresh()
        return self._snapshot

    async def refresh(
        self,
        *,
        fallback: bool = True,
        still_allowed: Optional[Callable[[], bool]] = None,
    ) -> Optional[ReconcileResult]:
        """Fetch the authoritative snapshot and reconcile with it.

        Without ``fallback`` a failed fetch leaves the replica untouched and
        returns ``None``. With it, the replica is marked disconnected and seed
        data is swapped in only if nothing was ever synced. ``still_allowed``
        is consulted after the fetch so a result that raced a newly started
        write is discarded.
        """

        remote = await self.fetch_remote()
        if remote is None:
            if not fallback:
                return None
            self._connected = False
            self._empty_remote = False
            if self._last_synced_at is not None:
                logger.warning("Remote store unavailable; keeping the last synced replica")
                return None
            logger.warning("Remote store unavailable; continuing offline with seed data")
            return self.reconcile(self._fallback())

        if still_allowed is not None and not still_allowed():
            logger.debug("Discarding background fetch that overlapped a local write")
            return None

        self._connected = True
        self._empty_remote = len(remote.users) == 0
        if self._empty_remote:
            logger.warning("Remote store returned no users; a reseed is required")
        self._last_synced_at = _utcnow()
        return self.reconcile(remote)

    async def fetch_remote(self) -> Optional[Snapshot]:
        """Read the remote store without touching the replica."""

        try:
            return await self._store.fetch_all()
        except Exception:  # adapters report failure as None; anything else is a bug
            logger.exception("Remote store adapter raised while fetching")
            return None

    # ------------------------------------------------------------------
    # Local writes
    # ------------------------------------------------------------------
    def apply_local(self, mutation: Mutation) -> None:
        """Apply ``mutation`` immediately, before the remote store confirms it."""

        if mutation.collection is Collection.SETTINGS:
            self._snapshot = replace(self._snapshot, settings=mutation.record)  # type: ignore[arg-type]
            return

        collection = mutation.collection
        record = mutation.record
        records = list(self._snapshot.records(collection))
        if mutation.op is WriteOp.ADD:
            if collection is Collection.COURSES:
                records.insert(0, record)
            else:
                records.append(record)
        elif mutation.op is WriteOp.UPDATE:
            for index, existing in enumerate(records):
                if existing.id == record.id:  # type: ignore[attr-defined]
                    records[index] = record
                    break
            else:
                logger.debug("Local update for missing %s %s ignored", collection.value, record.id)  # type: ignore[union-attr]
        else:
            records = [existing for existing in records if existing.id != record.id]  # type: ignore[attr-defined,union-attr]
        self._snapshot = self._snapshot.with_collection(collection, records)

    def restore(self, mutation: Mutation, previous: Optional[Union[Record, SystemSettings]]) -> None:
        """Undo ``mutation`` locally when the remote store cannot be read back."""

        if mutation.collection is Collection.SETTINGS:
            self._snapshot = replace(self._snapshot, settings=previous)  # type: ignore[arg-type]
            return
        if previous is None:
            self.apply_local(replace(mutation, op=WriteOp.DELETE))
            return
        records = list(self._snapshot.records(mutation.collection))
        if any(existing.id == previous.id for existing in records):  # type: ignore[attr-defined,union-attr]
            self.apply_local(Mutation(mutation.collection, WriteOp.UPDATE, previous))
        else:
            self.apply_local(Mutation(mutation.collection, WriteOp.ADD, previous))

    def pin(self, key: RecordKey) -> None:
        self._pins[key] = self._pins.get(key, 0) + 1

    def unpin(self, key: RecordKey) -> None:
        remaining = self._pins.get(key, 0) - 1
        if remaining > 0:
            self._pins[key] = remaining
        else:
            self._pins.pop(key, None)

    def is_pinned(self, key: RecordKey) -> bool:
        return key in self._pins

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    def reconcile(self, remote: Snapshot) -> ReconcileResult:
        """Converge the replica to ``remote`` record by record."""

        result = ReconcileResult()
        snapshot = self._snapshot
        for collection in RECORD_COLLECTIONS:
            merged, diff = self._merge(collection, snapshot.records(collection), remote.records(collection))
            result.collections[collection] = diff
            snapshot = snapshot.with_collection(collection, merged)

        if remote.settings is not None and not self.is_pinned(SETTINGS_KEY):
            if remote.settings != snapshot.settings:
                snapshot = replace(snapshot, settings=remote.settings)
                result.settings_changed = True

        self._snapshot = snapshot
        if result.changed:
            logger.info(
                "Reconciled replica: %s",
                ", ".join(
                    f"{collection.value} +{len(diff.added)}/~{len(diff.updated)}/-{len(diff.removed)}"
                    for collection, diff in result.collections.items()
                    if diff.changed
                )
                or "settings",
            )
        return result

    def _merge(
        self,
        collection: Collection,
        local: Tuple[object, ...],
        remote: Tuple[object, ...],
    ) -> Tuple[List[object], CollectionDiff]:
        diff = CollectionDiff()
        local_by_id = {record.id: record for record in local}  # type: ignore[attr-defined]
        remote_ids = set()
        merged: List[object] = []

        for record in remote:
            record_id = record.id  # type: ignore[attr-defined]
            remote_ids.add(record_id)
            existing = local_by_id.get(record_id)
            if self.is_pinned((collection, record_id)):
                if existing is not None:
                    merged.append(existing)
                continue
            if existing is None:
                diff.added.append(record_id)
                merged.append(record)
            elif existing == record:
                merged.append(existing)
            else:
                diff.updated.append(record_id)
                merged.append(record)

        for record in local:
            record_id = record.id  # type: ignore[attr-defined]
            if record_id in remote_ids:
                continue
            if self.is_pinned((collection, record_id)):
                merged.append(record)
            else:
                diff.removed.append(record_id)

        return merged, diff


__all__ = ["CollectionDiff", "Mutation", "ReconcileResult", "ReplicaStore", "SETTINGS_KEY"]
