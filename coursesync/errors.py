"""Exceptions raised by the training sync engine."""

from __future__ import annotations


class CourseSyncError(RuntimeError):
    """Base class for errors surfaced to callers of the training service."""


class ValidationError(CourseSyncError, ValueError):
    """Raised when an intent carries invalid or conflicting data."""


class NotFoundError(CourseSyncError, LookupError):
    """Raised when an intent references a record the replica does not hold."""

    def __init__(self, kind: str, record_id: str) -> None:
        super().__init__(f"{kind} '{record_id}' does not exist")
        self.kind = kind
        self.record_id = record_id


class PermissionDeniedError(CourseSyncError):
    """Raised when the acting user's role may not perform an intent."""


class AuthenticationError(CourseSyncError):
    """Raised when no user is signed in or credentials do not match."""


class InvalidTransitionError(CourseSyncError):
    """Raised when a status change is not an edge of its approval workflow."""

    def __init__(self, kind: str, current: str, target: str) -> None:
        super().__init__(f"Cannot move {kind} from '{current}' to '{target}'")
        self.kind = kind
        self.current = current
        self.target = target


class EmptyRemoteDataError(CourseSyncError):
    """Raised when the remote store answers but holds no users at all."""

    def __init__(self) -> None:
        super().__init__(
            "The remote store returned no users. It may have been wiped; reseed to recover."
        )


__all__ = [
    "AuthenticationError",
    "CourseSyncError",
    "EmptyRemoteDataError",
    "InvalidTransitionError",
    "NotFoundError",
    "PermissionDeniedError",
    "ValidationError",
]
