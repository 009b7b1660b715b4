"""Adapters for the remote record store that holds the authoritative collections."""

from __future__ import annotations

import copy
import json
import logging
import time
from datetime import tzinfo
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Set, Tuple

import httpx

from .models import Collection, Course, Snapshot, User, WriteOp
from .seed import reseed_registrations

logger = logging.getLogger("coursesync.remote")


class RecordStore(Protocol):
    """Contract every remote store adapter fulfils.

    ``fetch_all`` returns ``None`` on total failure. ``write`` only reports
    coarse success, never a conflict reason.
    """

    async def fetch_all(self) -> Optional[Snapshot]: ...

    async def write(self, collection: Collection, record: Mapping[str, Any], op: WriteOp) -> bool: ...

    async def seed(self, users: Sequence[User], courses: Sequence[Course]) -> bool: ...


def _normalize_endpoint(endpoint: str) -> str:
    cleaned = (endpoint or "").strip()
    if not cleaned:
        raise ValueError("Remote store endpoint must not be empty")
    return cleaned


def _stringify_nested(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Spreadsheet cells hold scalars, so nested values travel as JSON text."""

    sanitized: Dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, (dict, list)):
            sanitized[key] = json.dumps(value, ensure_ascii=False)
        else:
            sanitized[key] = value
    return sanitized


def _extract_error_message(payload: object, default: str) -> str:
    if isinstance(payload, dict):
        for key in ("message", "detail", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return default


class SheetRecordStore:
    """Talks to the spreadsheet-backed web endpoint over HTTP."""

    def __init__(
        self,
        endpoint: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
        tz: Optional[tzinfo] = None,
    ) -> None:
        self._endpoint = _normalize_endpoint(endpoint)
        self._clock = clock
        self._tz = tz
        self._client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    @property
    def endpoint(self) -> str:
        return self._endpoint

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_all(self) -> Optional[Snapshot]:
        params = {"action": "read", "t": str(int(self._clock() * 1000))}
        try:
            response = await self._client.get(self._endpoint, params=params)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Unable to read from remote store: %s", exc)
            return None

        try:
            payload = json.loads(response.text)
        except ValueError:
            logger.warning("Remote store returned a non-JSON body: %.100s", response.text)
            return None

        if not isinstance(payload, dict):
            logger.warning("Remote store returned an unexpected payload type: %s", type(payload).__name__)
            return None
        if payload.get("status") == "error":
            logger.warning(
                "Remote store reported an error: %s",
                _extract_error_message(payload, "unknown error"),
            )
            return None

        return Snapshot.from_dict(payload, self._tz)

    async def write(self, collection: Collection, record: Mapping[str, Any], op: WriteOp) -> bool:
        body = {
            "sheetName": collection.value,
            "action": op.value,
            "payload": _stringify_nested(record),
        }
        return await self._post(body, description=f"{op.value} {collection.value}")

    async def seed(self, users: Sequence[User], courses: Sequence[Course]) -> bool:
        registrations = reseed_registrations(users, courses)
        body = {
            "action": "seed",
            "payload": {
                "users": [_stringify_nested(user.to_dict()) for user in users],
                "courses": [course.to_dict() for course in courses],
                "registrations": [registration.to_dict() for registration in registrations],
            },
        }
        return await self._post(body, description="seed")

    async def _post(self, body: Mapping[str, Any], *, description: str) -> bool:
        try:
            response = await self._client.post(
                self._endpoint,
                content=json.dumps(body, ensure_ascii=False).encode("utf-8"),
                headers={"Content-Type": "text/plain;charset=utf-8"},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Remote %s failed: %s", description, exc)
            return False

        try:
            payload = response.json()
        except ValueError:
            # The script endpoint may answer with an HTML redirect page.
            return True
        if isinstance(payload, dict) and payload.get("status") == "error":
            logger.warning(
                "Remote %s rejected: %s",
                description,
                _extract_error_message(payload, "unknown error"),
            )
            return False
        return True


class InMemoryRecordStore:
    """Process-local record store with the same contract as the remote endpoint.

    Used for offline demos and tests. Failures can be injected per collection
    and operation.
    """

    def __init__(self, snapshot: Optional[Snapshot] = None, *, tz: Optional[tzinfo] = None) -> None:
        self._tz = tz
        self._rows: Dict[Collection, List[Dict[str, Any]]] = {
            Collection.USERS: [],
            Collection.COURSES: [],
            Collection.REGISTRATIONS: [],
        }
        self._settings: Optional[Dict[str, Any]] = None
        self.available = True
        self.failing_writes: Set[Tuple[Collection, WriteOp]] = set()
        self.write_log: List[Tuple[Collection, WriteOp, Dict[str, Any]]] = []
        self.fetch_count = 0
        if snapshot is not None:
            self.replace(snapshot)

    def replace(self, snapshot: Snapshot) -> None:
        payload = snapshot.to_dict()
        self._rows[Collection.USERS] = payload["users"]
        self._rows[Collection.COURSES] = payload["courses"]
        self._rows[Collection.REGISTRATIONS] = payload["registrations"]
        self._settings = payload.get("settings")

    def fail_writes(self, collection: Collection, op: WriteOp) -> None:
        self.failing_writes.add((collection, op))

    async def fetch_all(self) -> Optional[Snapshot]:
        self.fetch_count += 1
        if not self.available:
            return None
        payload: Dict[str, Any] = {
            "users": copy.deepcopy(self._rows[Collection.USERS]),
            "courses": copy.deepcopy(self._rows[Collection.COURSES]),
            "registrations": copy.deepcopy(self._rows[Collection.REGISTRATIONS]),
        }
        if self._settings is not None:
            payload["settings"] = copy.deepcopy(self._settings)
        return Snapshot.from_dict(payload, self._tz)

    async def write(self, collection: Collection, record: Mapping[str, Any], op: WriteOp) -> bool:
        row = dict(record)
        self.write_log.append((collection, op, row))
        if not self.available or (collection, op) in self.failing_writes:
            return False

        if collection is Collection.SETTINGS:
            self._settings = {"popup": row}
            return True

        rows = self._rows[collection]
        record_id = str(row.get("id", ""))
        if op is WriteOp.ADD:
            rows.append(row)
        elif op is WriteOp.UPDATE:
            for index, existing in enumerate(rows):
                if str(existing.get("id")) == record_id:
                    rows[index] = row
                    break
        else:
            self._rows[collection] = [existing for existing in rows if str(existing.get("id")) != record_id]
        return True

    async def seed(self, users: Sequence[User], courses: Sequence[Course]) -> bool:
        if not self.available:
            return False
        self._rows[Collection.USERS] = [user.to_dict() for user in users]
        self._rows[Collection.COURSES] = [course.to_dict() for course in courses]
        self._rows[Collection.REGISTRATIONS] = [
            registration.to_dict() for registration in reseed_registrations(users, courses)
        ]
        return True


__all__ = ["InMemoryRecordStore", "RecordStore", "SheetRecordStore"]
