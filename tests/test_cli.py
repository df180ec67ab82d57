"""Tests for CLI commands"""

import json
import re
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from cli import __version__
from cli.main import app

UUID_PATTERN = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}")


@pytest.fixture
def runner():
    """CLI test runner"""
    return CliRunner()


@pytest.fixture
def cli_db(settings, tmp_path, monkeypatch, runner):
    """Point the CLI at a fresh SQLite file and create its tables"""
    cli_settings = settings.model_copy(
        update={"database_url": f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"}
    )
    monkeypatch.setattr("orchestrator.config.settings.settings", cli_settings)

    result = runner.invoke(app, ["init-db"])
    assert result.exit_code == 0, result.stdout
    assert "Database tables created" in result.stdout
    return cli_settings


def enqueue(runner, *args):
    result = runner.invoke(app, ["jobs", "enqueue", *args])
    assert result.exit_code == 0, result.stdout
    return result, UUID_PATTERN.search(result.stdout).group(0)


class TestMainCommands:
    """Test main CLI commands"""

    def test_version_command(self, runner):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_version_flag(self, runner):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"Job Orchestrator CLI v{__version__}" in result.stdout


class TestJobCommands:
    """Test job queue commands"""

    def test_enqueue_and_show(self, runner, cli_db):
        result, job_id = enqueue(
            runner, "echo", "--owner", "user-1", "--payload", json.dumps({"a": 1})
        )
        assert "Job enqueued" in result.stdout

        result = runner.invoke(app, ["jobs", "show", job_id])
        assert result.exit_code == 0
        assert "pending" in result.stdout
        assert "echo" in result.stdout

    def test_enqueue_duplicate_key(self, runner, cli_db):
        _, first_id = enqueue(runner, "echo", "-o", "user-1", "-k", "k1")
        result, second_id = enqueue(runner, "echo", "-o", "user-1", "-k", "k1")

        assert second_id == first_id
        assert "already exists for key 'k1'" in result.stdout

    def test_enqueue_invalid_payload(self, runner, cli_db):
        result = runner.invoke(app, ["jobs", "enqueue", "echo", "-o", "u", "--payload", "{nope"])
        assert result.exit_code == 1
        assert "Invalid payload JSON" in result.stdout

        result = runner.invoke(app, ["jobs", "enqueue", "echo", "-o", "u", "--payload", "[1]"])
        assert result.exit_code == 1
        assert "Payload must be a JSON object" in result.stdout

    def test_show_invalid_and_missing_job(self, runner, cli_db):
        result = runner.invoke(app, ["jobs", "show", "not-a-uuid"])
        assert result.exit_code == 1
        assert "Invalid job ID" in result.stdout

        missing = "00000000-0000-0000-0000-000000000000"
        result = runner.invoke(app, ["jobs", "show", missing])
        assert result.exit_code == 1
        assert f"Job not found: {missing}" in result.stdout

    def test_stats(self, runner, cli_db):
        enqueue(runner, "echo", "-o", "user-1")
        enqueue(runner, "echo", "-o", "user-2")

        result = runner.invoke(app, ["jobs", "stats"])

        assert result.exit_code == 0
        assert "Job Statistics" in result.stdout
        assert "Type: echo" in result.stdout

    def test_requeue_rejects_non_failed_job(self, runner, cli_db):
        _, job_id = enqueue(runner, "echo", "-o", "user-1")

        result = runner.invoke(app, ["jobs", "requeue", job_id])

        assert result.exit_code == 1
        assert "is not FAILED" in result.stdout


class TestWorkerCommands:
    """Test worker commands"""

    def test_tick_executes_due_jobs(self, runner, cli_db):
        _, job_id = enqueue(runner, "echo", "-o", "user-1", "--payload", '{"hi": 1}')

        result = runner.invoke(app, ["worker", "tick"])
        assert result.exit_code == 0
        assert "Tick complete: 1 job(s) executed" in result.stdout

        result = runner.invoke(app, ["jobs", "show", job_id])
        assert "completed" in result.stdout
        assert "Echoed payload" in result.stdout

    def test_failed_job_can_be_requeued(self, runner, cli_db):
        _, job_id = enqueue(runner, "mystery", "-o", "user-1")
        runner.invoke(app, ["worker", "tick"])

        result = runner.invoke(app, ["jobs", "show", job_id])
        assert "failed" in result.stdout
        assert "Not implemented" in result.stdout

        result = runner.invoke(app, ["jobs", "requeue", job_id, "--reset-attempts"])
        assert result.exit_code == 0
        assert f"Job requeued: {job_id}" in result.stdout

        result = runner.invoke(app, ["jobs", "show", job_id])
        assert "pending" in result.stdout

    def test_reap_with_nothing_stuck(self, runner, cli_db):
        result = runner.invoke(app, ["worker", "reap"])
        assert result.exit_code == 0
        assert "No stuck jobs found" in result.stdout

    @patch("cli.commands.worker.setup_logging")
    def test_run_once_drains_queue(self, mock_setup_logging, runner, cli_db):
        _, job_id = enqueue(runner, "echo", "-o", "user-1")

        result = runner.invoke(app, ["worker", "run", "--once"])
        assert result.exit_code == 0
        mock_setup_logging.assert_called_once()

        result = runner.invoke(app, ["jobs", "show", job_id])
        assert "completed" in result.stdout
