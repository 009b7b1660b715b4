import pytest

from main import _parse_args, main


def test_default_command_invokes_serve() -> None:
    args = _parse_args([])
    assert args.command == "serve"
    assert args.port == 8000


def test_default_command_accepts_options_without_subcommand() -> None:
    args = _parse_args(["--host", "127.0.0.1", "--port", "8080", "--config", "custom.yaml"])
    assert args.command == "serve"
    assert args.host == "127.0.0.1"
    assert args.port == 8080
    assert args.config == "custom.yaml"


def test_status_and_reseed_subcommands_available() -> None:
    assert _parse_args(["status"]).command == "status"
    args = _parse_args(["reseed", "--yes"])
    assert args.command == "reseed"
    assert args.yes is True


def test_reseed_refuses_without_confirmation(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("COURSESYNC_STATE_DIR", str(tmp_path))
    monkeypatch.delenv("COURSESYNC_ENDPOINT", raising=False)
    with pytest.raises(SystemExit) as excinfo:
        main(["reseed", "--config", str(tmp_path / "absent.yaml")])
    assert "--yes" in str(excinfo.value)


def test_status_against_in_memory_store(tmp_path, monkeypatch, capsys) -> None:
    monkeypatch.setenv("COURSESYNC_STATE_DIR", str(tmp_path))
    monkeypatch.delenv("COURSESYNC_ENDPOINT", raising=False)
    with pytest.raises(SystemExit) as excinfo:
        main(["status", "--config", str(tmp_path / "absent.yaml")])
    assert excinfo.value.code == 0
    output = capsys.readouterr().out
    assert "Users:          7" in output
    assert "Courses:        4" in output
