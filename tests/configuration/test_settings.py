"""Tests for Aularis configuration settings."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from aularis.configuration.settings import (
    Settings,
    StateBackend,
    load_settings,
    save_settings,
    validate_settings_file,
)
from aularis.errors import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "AULARIS_CONFIG",
        "AULARIS_WORKSPACE",
        "AULARIS_LOG_LEVEL",
        "AULARIS_DB_PASSWORD",
        "AULARIS_QUEUE_CONCURRENCY",
        "AULARIS_TUNNEL_ENABLED",
        "AULARIS_STATE_BACKEND",
        "AULARIS_TIMEZONE",
    ):
        monkeypatch.delenv(name, raising=False)


def write_config(path: Path, data: dict) -> Path:
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


def test_missing_file_gives_defaults(tmp_path: Path) -> None:
    settings = load_settings(tmp_path / "missing.yaml")

    assert settings.queue.concurrency == 2
    assert settings.queue.staleness_hours == 4.0
    assert settings.schedule.cron_expressions == ["0 8 * * *", "0 16 * * *"]
    assert settings.schedule.timezone == "America/Mexico_City"
    assert settings.state.backend == StateBackend.FILE
    assert settings.tunnel.enabled is False


def test_yaml_values_are_loaded(tmp_path: Path) -> None:
    config = write_config(
        tmp_path / "config.yaml",
        {
            "workspace_path": str(tmp_path / "ws"),
            "log_level": "debug",
            "queue": {"concurrency": 4, "retry": {"strategy": "linear_backoff"}},
            "tenants": [{"id": "101", "base_url": "https://aula101.example.edu"}],
        },
    )

    settings = load_settings(config)

    assert settings.log_level == "DEBUG"
    assert settings.queue.concurrency == 4
    assert settings.queue.retry.strategy.value == "linear_backoff"
    assert settings.tenants[0].id == "101"
    assert settings.queue_database_path == tmp_path / "ws" / "aularis.db"
    assert settings.state_path == tmp_path / "ws" / "process_state.json"
    assert settings.log_dir == tmp_path / "ws" / "logs"


def test_config_path_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = write_config(tmp_path / "alt.yaml", {"queue": {"concurrency": 6}})
    monkeypatch.setenv("AULARIS_CONFIG", str(config))

    assert load_settings().queue.concurrency == 6


def test_environment_overrides_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = write_config(tmp_path / "config.yaml", {"queue": {"concurrency": 3}})
    monkeypatch.setenv("AULARIS_QUEUE_CONCURRENCY", "5")
    monkeypatch.setenv("AULARIS_DB_PASSWORD", "from-env")
    monkeypatch.setenv("AULARIS_TUNNEL_ENABLED", "true")
    monkeypatch.setenv("AULARIS_STATE_BACKEND", "sqlite")

    settings = load_settings(config)

    assert settings.queue.concurrency == 5
    assert settings.tunnel.db_password.get_secret_value() == "from-env"
    assert settings.tunnel.enabled is True
    assert settings.state.backend == StateBackend.SQLITE
    assert settings.state_path == settings.queue_database_path


def test_non_integer_environment_value(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AULARIS_QUEUE_CONCURRENCY", "many")

    with pytest.raises(ConfigurationError):
        load_settings(tmp_path / "missing.yaml")


@pytest.mark.parametrize(
    "data",
    [
        {"schedule": {"cron_expressions": ["every day"]}},
        {"schedule": {"timezone": "Mars/Olympus"}},
        {"queue": {"concurrency": 0}},
        {"collaborators": {"analysis_executor": "no_colon_here"}},
        {"unexpected": True},
    ],
)
def test_invalid_values_are_rejected(tmp_path: Path, data: dict) -> None:
    config = write_config(tmp_path / "config.yaml", data)

    with pytest.raises(ConfigurationError):
        load_settings(config)
    assert validate_settings_file(config)


def test_invalid_yaml(tmp_path: Path) -> None:
    config = tmp_path / "config.yaml"
    config.write_text("queue: [unclosed", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_settings(config)
    assert validate_settings_file(config)[0].startswith("Failed to parse configuration")


def test_validate_missing_file(tmp_path: Path) -> None:
    assert validate_settings_file(tmp_path / "nope.yaml") == [
        f"Configuration file not found: {tmp_path / 'nope.yaml'}"
    ]


def test_save_masks_secrets(tmp_path: Path) -> None:
    config = tmp_path / "saved.yaml"
    settings = Settings.model_validate(
        {"workspace_path": str(tmp_path), "tunnel": {"db_password": "secret", "ssh_password": "pw"}}
    )

    save_settings(settings, config)

    data = yaml.safe_load(config.read_text(encoding="utf-8"))
    assert data["tunnel"]["db_password"] == "***"
    assert data["tunnel"]["ssh_password"] == "***"
    assert validate_settings_file(config) == []
