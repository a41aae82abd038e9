"""Tests for the aularis command line."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from aularis.cli import cli, pipeline
from aularis.orchestrator.models import BatchJob, BatchStatus, TriggerType, utcnow
from aularis.orchestrator.store import PipelineStore


@pytest.fixture(autouse=True)
def wide_console(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(pipeline.console, "width", 200)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "workspace_path": str(tmp_path / "workspace"),
                "log_level": "WARNING",
                "schedule": {"cron_expressions": ["0 8 * * *"], "timezone": "UTC"},
                "tenants": [{"id": "101", "base_url": "https://aula101.example.edu"}],
            }
        ),
        encoding="utf-8",
    )
    return path


def test_schedule_lists_fire_times(runner, config_file) -> None:
    result = runner.invoke(cli, ["schedule", "--config", str(config_file), "--count", "2"])

    assert result.exit_code == 0, result.output
    assert "0 8 * * *" in result.output
    assert "08:00" in result.output


def test_state_json(runner, config_file) -> None:
    result = runner.invoke(cli, ["state", "-c", str(config_file), "--format", "json"])

    assert result.exit_code == 0, result.output
    assert '"process"' in result.output
    assert '"current_step": "Idle"' in result.output


def test_state_table(runner, config_file) -> None:
    result = runner.invoke(cli, ["state", "-c", str(config_file)])

    assert result.exit_code == 0, result.output
    assert "Aularis State" in result.output
    assert "Pending" in result.output


def test_scan_records_a_batch_run(runner, config_file, tmp_path) -> None:
    scan = runner.invoke(cli, ["scan", "-c", str(config_file)])
    jobs = runner.invoke(cli, ["jobs", "-c", str(config_file)])

    assert scan.exit_code == 0, scan.output
    assert "queue_scan" in scan.output
    assert "completed" in scan.output
    assert jobs.exit_code == 0, jobs.output
    assert "queue_scan" in jobs.output


def test_jobs_when_nothing_ran(runner, config_file) -> None:
    result = runner.invoke(cli, ["jobs", "-c", str(config_file)])

    assert result.exit_code == 0
    assert "No batch runs recorded" in result.output


def test_jobs_lists_stored_runs(runner, config_file, tmp_path) -> None:
    store = PipelineStore(tmp_path / "workspace" / "aularis.db")
    store.insert_batch_job(
        BatchJob(
            job_id="abcdef1234567890",
            trigger=TriggerType.SCHEDULED,
            scope="ALL",
            status=BatchStatus.RUNNING,
            started_at=utcnow(),
        )
    )
    store.close()

    result = runner.invoke(cli, ["jobs", "-c", str(config_file), "--limit", "5"])

    assert result.exit_code == 0, result.output
    assert "abcdef123456" in result.output
    assert "scheduled" in result.output


def test_queue_status(runner, config_file) -> None:
    result = runner.invoke(cli, ["queue-status", "101", "-c", str(config_file)])

    assert result.exit_code == 0, result.output
    assert "Queue for tenant 101" in result.output
    assert "In progress: no" in result.output


def test_queue_status_rejects_unknown_status(runner, config_file) -> None:
    result = runner.invoke(cli, ["queue-status", "101", "-c", str(config_file), "--status", "stuck"])

    assert result.exit_code == 1
    assert "Invalid status" in result.output


def test_cleanup(runner, config_file) -> None:
    result = runner.invoke(cli, ["cleanup", "-c", str(config_file), "--older-than", "1"])

    assert result.exit_code == 0, result.output
    assert "Deleted 0 completed entries" in result.output


def test_invalid_configuration_exits_with_error(runner, tmp_path) -> None:
    config = tmp_path / "bad.yaml"
    config.write_text("schedule:\n  timezone: Nowhere/Land\n", encoding="utf-8")

    result = runner.invoke(cli, ["state", "-c", str(config)])

    assert result.exit_code == 1
    assert "CONFIGURATION_ERROR" in result.output


def test_config_validate_and_init(runner, tmp_path) -> None:
    config = tmp_path / "generated.yaml"

    init = runner.invoke(cli, ["config", "init", "--config-path", str(config)])
    again = runner.invoke(cli, ["config", "init", "--config-path", str(config)])
    validate = runner.invoke(cli, ["config", "validate", "--config-path", str(config)])

    assert init.exit_code == 0, init.output
    assert again.exit_code == 1
    assert validate.exit_code == 0
    assert "Configuration is valid" in validate.output
