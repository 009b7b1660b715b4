"""Client-side sync engine for training course registrations and approvals."""

from __future__ import annotations

from typing import Any

from .config import SyncConfig, load_sync_config, resolve_config_path
from .service import TrainingService, build_service


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the UI-facing HTTP application."""

    from .api import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "SyncConfig",
    "TrainingService",
    "build_service",
    "create_app",
    "load_sync_config",
    "resolve_config_path",
]
