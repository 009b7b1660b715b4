from __future__ import annotations

import sys
from datetime import date
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from coursesync.config import SyncConfig, VisibilityLags  # noqa: E402
from coursesync.remote import InMemoryRecordStore  # noqa: E402
from coursesync.seed import seed_snapshot  # noqa: E402

TODAY = date(2026, 3, 2)

INSTANT_LAGS = VisibilityLags(
    user=0,
    course=0,
    register=0,
    cancel=0,
    registration_action=0,
    settings=0,
    reseed=0,
)


def instant_config(tmp_path: Path, **overrides: object) -> SyncConfig:
    values: dict[str, object] = {
        "batch_spacing": 0,
        "visibility_lag": INSTANT_LAGS,
        "state_dir": tmp_path,
    }
    values.update(overrides)
    return SyncConfig(**values)  # type: ignore[arg-type]


@pytest.fixture()
def seeded_store() -> InMemoryRecordStore:
    return InMemoryRecordStore(seed_snapshot(TODAY))
