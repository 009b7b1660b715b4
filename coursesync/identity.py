"""Client-local persistence of the signed-in user."""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import threading
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .models import User

logger = logging.getLogger("coursesync.identity")

IDENTITY_KEY = "currentUser"


def _build_cipher(secret: Optional[str]) -> Optional[Fernet]:
    if not secret:
        return None
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


class IdentityStore:
    """Save, rehydrate and forget the authenticated user across restarts.

    The record lives in ``<state_dir>/currentUser.json``. When a secret is
    configured the file content is Fernet-encrypted.
    """

    def __init__(self, state_dir: Path, *, secret: Optional[str] = None) -> None:
        self._path = state_dir / f"{IDENTITY_KEY}.json"
        self._cipher = _build_cipher(secret)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def save(self, user: User) -> None:
        data = json.dumps(user.to_dict(), ensure_ascii=False).encode("utf-8")
        if self._cipher is not None:
            data = self._cipher.encrypt(data)
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_bytes(data)

    def load(self) -> Optional[User]:
        with self._lock:
            if not self._path.exists():
                return None
            data = self._path.read_bytes()

        if self._cipher is not None:
            try:
                data = self._cipher.decrypt(data)
            except InvalidToken:
                logger.warning("Stored identity could not be decrypted; treating as signed out")
                return None
        try:
            return User.from_dict(json.loads(data.decode("utf-8")))
        except (UnicodeDecodeError, ValueError, KeyError):
            logger.warning("Stored identity is corrupt; treating as signed out")
            return None

    def clear(self) -> None:
        with self._lock:
            self._path.unlink(missing_ok=True)


__all__ = ["IDENTITY_KEY", "IdentityStore"]
