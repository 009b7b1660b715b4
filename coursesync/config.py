"""Configuration management for the training sync engine."""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields, replace
from datetime import timedelta, timezone, tzinfo
from pathlib import Path
from typing import Dict, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

DEFAULT_TIMEZONE = timezone(timedelta(hours=7))

_OFFSET_PATTERN = re.compile(r"^([+-])(\d{2}):?(\d{2})$")


def _positive_float(data: Mapping[str, object], key: str, default: float, *, allow_zero: bool = True) -> float:
    raw = data.get(key, default)
    try:
        value = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Configuration value '{key}' must be a number") from exc
    if value < 0 or (value == 0 and not allow_zero):
        raise ValueError(f"Configuration value '{key}' must be {'non-negative' if allow_zero else 'positive'}")
    return value


def _flag(data: Mapping[str, object], key: str, default: bool) -> bool:
    raw = data.get(key, default)
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, int):
        return bool(raw)
    if isinstance(raw, str):
        lowered = raw.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"", "0", "false", "no", "off"}:
            return False
    raise ValueError(f"Configuration value '{key}' must be a boolean")


def parse_timezone(raw: object) -> tzinfo:
    """Accept a fixed offset such as ``+07:00``, ``UTC`` or an IANA zone name."""

    text = str(raw or "").strip()
    if not text:
        raise ValueError("Configuration value 'timezone' must not be empty")
    if text.upper() in {"UTC", "Z"}:
        return timezone.utc
    match = _OFFSET_PATTERN.match(text)
    if match is not None:
        sign, hours, minutes = match.groups()
        offset = timedelta(hours=int(hours), minutes=int(minutes))
        if offset >= timedelta(hours=24):
            raise ValueError(f"Timezone offset '{text}' is out of range")
        return timezone(-offset if sign == "-" else offset)
    try:
        return ZoneInfo(text)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone '{text}'") from exc


def _resolve_path(raw: str, base_path: Optional[Path]) -> Path:
    candidate = Path(raw).expanduser()
    if not candidate.is_absolute() and base_path is not None:
        candidate = base_path / candidate
    return candidate.resolve(strict=False)


def _default_state_dir() -> Path:
    return (Path(__file__).resolve().parent.parent / "data").resolve(strict=False)


@dataclass(frozen=True)
class VisibilityLags:
    """Seconds the remote store needs before a write shows up in reads, per operation."""

    user: float = 1.5
    course: float = 1.5
    register: float = 20.0
    cancel: float = 5.0
    registration_action: float = 3.0
    settings: float = 1.5
    reseed: float = 2.0

    @staticmethod
    def from_dict(data: Optional[Mapping[str, object]]) -> "VisibilityLags":
        if not data:
            return VisibilityLags()
        known = {item.name for item in fields(VisibilityLags)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown visibility lag operations: {', '.join(sorted(unknown))}")
        defaults = VisibilityLags()
        return VisibilityLags(
            **{name: _positive_float(data, name, getattr(defaults, name)) for name in known}
        )


@dataclass(frozen=True)
class SyncConfig:
    """Runtime settings for the replica, the scheduler and the remote adapter."""

    endpoint: Optional[str] = None
    request_timeout: float = 30.0
    poll_interval: float = 10.0
    batch_spacing: float = 2.0
    confirm_writes: bool = False
    visibility_lag: VisibilityLags = field(default_factory=VisibilityLags)
    state_dir: Path = field(default_factory=_default_state_dir)
    identity_secret: Optional[str] = None
    local_timezone: tzinfo = DEFAULT_TIMEZONE

    @staticmethod
    def from_dict(data: Mapping[str, object], base_path: Path | None = None) -> "SyncConfig":
        """Create a :class:`SyncConfig` from raw dictionary data."""

        endpoint = str(data.get("endpoint") or "").strip()
        state_dir = data.get("state_dir")
        lags = data.get("visibility_lag")
        if lags is not None and not isinstance(lags, Mapping):
            raise ValueError("'visibility_lag' must be a mapping of operation names to seconds")

        return SyncConfig(
            endpoint=endpoint or None,
            request_timeout=_positive_float(data, "request_timeout", 30.0, allow_zero=False),
            poll_interval=_positive_float(data, "poll_interval", 10.0, allow_zero=False),
            batch_spacing=_positive_float(data, "batch_spacing", 2.0),
            confirm_writes=_flag(data, "confirm_writes", False),
            visibility_lag=VisibilityLags.from_dict(lags),
            state_dir=_resolve_path(str(state_dir), base_path) if state_dir else _default_state_dir(),
            identity_secret=str(data["identity_secret"]) if data.get("identity_secret") else None,
            local_timezone=parse_timezone(data["timezone"]) if data.get("timezone") else DEFAULT_TIMEZONE,
        )


def _env_overrides(config: SyncConfig, environ: Mapping[str, str]) -> SyncConfig:
    overrides: Dict[str, object] = {}
    endpoint = environ.get("COURSESYNC_ENDPOINT", "").strip()
    if endpoint:
        overrides["endpoint"] = endpoint
    state_dir = environ.get("COURSESYNC_STATE_DIR", "").strip()
    if state_dir:
        overrides["state_dir"] = Path(state_dir).expanduser().resolve(strict=False)
    secret = environ.get("COURSESYNC_IDENTITY_SECRET", "").strip()
    if secret:
        overrides["identity_secret"] = secret
    zone = environ.get("COURSESYNC_TIMEZONE", "").strip()
    if zone:
        overrides["local_timezone"] = parse_timezone(zone)
    return replace(config, **overrides) if overrides else config


def load_sync_config(config_path: Path, environ: Optional[Mapping[str, str]] = None) -> SyncConfig:
    """Load settings from a YAML file; a missing file yields the defaults."""

    if config_path.exists():
        with config_path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
        if not isinstance(raw, Mapping):
            raise ValueError("Configuration file must contain a mapping at the top level")
        config = SyncConfig.from_dict(raw, base_path=config_path.parent)
    else:
        config = SyncConfig()
    return _env_overrides(config, os.environ if environ is None else environ)


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the configuration file."""
    if env_value:
        candidate = Path(env_value).expanduser().resolve(strict=False)
    else:
        candidate = (Path(__file__).resolve().parent.parent / "config" / "coursesync.yaml").resolve(strict=False)
    return candidate


__all__ = [
    "DEFAULT_TIMEZONE",
    "SyncConfig",
    "VisibilityLags",
    "load_sync_config",
    "parse_timezone",
    "resolve_config_path",
]
