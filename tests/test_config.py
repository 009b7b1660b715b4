from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from coursesync.config import (
    DEFAULT_TIMEZONE,
    SyncConfig,
    VisibilityLags,
    load_sync_config,
    parse_timezone,
    resolve_config_path,
)


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    config = load_sync_config(tmp_path / "absent.yaml", environ={})

    assert config.endpoint is None
    assert config.poll_interval == 10.0
    assert config.batch_spacing == 2.0
    assert config.confirm_writes is False
    assert config.visibility_lag == VisibilityLags()
    assert config.visibility_lag.register == 20.0
    assert config.visibility_lag.cancel == 5.0


def test_yaml_values_and_relative_state_dir(tmp_path: Path) -> None:
    config_path = tmp_path / "config" / "coursesync.yaml"
    config_path.parent.mkdir()
    config_path.write_text(
        "\n".join(
            [
                "endpoint: ' https://script.example.com/exec '",
                "poll_interval: 5",
                "confirm_writes: true",
                "visibility_lag:",
                "  register: 12",
                "state_dir: ../state",
            ]
        ),
        encoding="utf-8",
    )

    config = load_sync_config(config_path, environ={})

    assert config.endpoint == "https://script.example.com/exec"
    assert config.poll_interval == 5.0
    assert config.confirm_writes is True
    assert config.visibility_lag.register == 12.0
    assert config.visibility_lag.user == 1.5
    assert config.state_dir == (tmp_path / "state").resolve()


def test_environment_overrides_file(tmp_path: Path) -> None:
    config_path = tmp_path / "coursesync.yaml"
    config_path.write_text("endpoint: https://file.example.com\n", encoding="utf-8")

    config = load_sync_config(
        config_path,
        environ={
            "COURSESYNC_ENDPOINT": "https://env.example.com",
            "COURSESYNC_STATE_DIR": str(tmp_path / "env-state"),
            "COURSESYNC_IDENTITY_SECRET": "s3cret",
        },
    )

    assert config.endpoint == "https://env.example.com"
    assert config.state_dir == (tmp_path / "env-state").resolve()
    assert config.identity_secret == "s3cret"


def test_invalid_values_are_rejected() -> None:
    with pytest.raises(ValueError):
        SyncConfig.from_dict({"visibility_lag": {"unknown_op": 1}})
    with pytest.raises(ValueError):
        SyncConfig.from_dict({"poll_interval": 0})
    with pytest.raises(ValueError):
        SyncConfig.from_dict({"batch_spacing": "soon"})
    with pytest.raises(ValueError):
        SyncConfig.from_dict({"visibility_lag": [1, 2]})


def test_non_mapping_file_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "coursesync.yaml"
    config_path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ValueError):
        load_sync_config(config_path, environ={})


def test_resolve_config_path_prefers_explicit_value(tmp_path: Path) -> None:
    explicit = tmp_path / "custom.yaml"
    assert resolve_config_path(str(explicit)) == explicit.resolve()
    assert resolve_config_path(None).name == "coursesync.yaml"


def test_confirm_writes_reads_yaml_strings(tmp_path: Path) -> None:
    config_path = tmp_path / "coursesync.yaml"
    config_path.write_text('confirm_writes: "false"\n', encoding="utf-8")

    assert load_sync_config(config_path, environ={}).confirm_writes is False
    assert SyncConfig.from_dict({"confirm_writes": "yes"}).confirm_writes is True
    assert SyncConfig.from_dict({"confirm_writes": "Off"}).confirm_writes is False
    with pytest.raises(ValueError):
        SyncConfig.from_dict({"confirm_writes": "sometimes"})


def test_timezone_defaults_to_utc_plus_seven_and_can_be_overridden(tmp_path: Path) -> None:
    config_path = tmp_path / "coursesync.yaml"
    config_path.write_text('timezone: "-03:30"\n', encoding="utf-8")

    assert SyncConfig().local_timezone == DEFAULT_TIMEZONE
    assert DEFAULT_TIMEZONE.utcoffset(None) == timedelta(hours=7)
    from_file = load_sync_config(config_path, environ={})
    assert from_file.local_timezone.utcoffset(None) == -timedelta(hours=3, minutes=30)
    from_env = load_sync_config(config_path, environ={"COURSESYNC_TIMEZONE": "UTC"})
    assert from_env.local_timezone is timezone.utc


def test_parse_timezone_accepts_zone_names_and_rejects_garbage() -> None:
    zone = parse_timezone("Asia/Ho_Chi_Minh")
    assert datetime(2024, 6, 15, 12, tzinfo=zone).utcoffset() == timedelta(hours=7)
    assert parse_timezone("+0530").utcoffset(None) == timedelta(hours=5, minutes=30)
    with pytest.raises(ValueError):
        parse_timezone("Not/A_Zone")
    with pytest.raises(ValueError):
        parse_timezone("")
