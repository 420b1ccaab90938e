"""Tests for the command-line interface."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import ACCOUNT, OWNER, child_specs
from typer.testing import CliRunner

from campaign_engine.cli import app
from campaign_engine.services.engine import Engine

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_engine(engine: Engine):
    """Point every command at the test engine."""
    with patch("campaign_engine.cli._engine", return_value=engine):
        yield engine


def test_version() -> None:
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert "Campaign Engine v" in result.stdout


class TestJobCommands:
    """Tests for the jobs command group."""

    def test_create_drives_inline(self, tmp_path: Path, engine: Engine, credential_id: int) -> None:
        request = tmp_path / "launch.json"
        request.write_text(json.dumps({"parent": {"name": "CLI Launch"}, "children": child_specs(1)}))

        result = runner.invoke(
            app, ["jobs", "create", str(request), "--owner", OWNER, "--account", ACCOUNT]
        )

        assert result.exit_code == 0, result.stdout
        assert "Job created: 1" in result.stdout
        assert engine.jobs.get(1).status == "completed"

    def test_create_rejects_invalid_request(self, tmp_path: Path) -> None:
        request = tmp_path / "bad.json"
        request.write_text(json.dumps({"parent": {}, "children": []}))

        result = runner.invoke(
            app, ["jobs", "create", str(request), "--owner", OWNER, "--account", ACCOUNT]
        )

        assert result.exit_code == 1
        assert "Invalid job request" in result.stdout

    def test_create_missing_file(self, tmp_path: Path) -> None:
        result = runner.invoke(
            app,
            ["jobs", "create", str(tmp_path / "nope.json"), "--owner", OWNER, "--account", ACCOUNT],
        )

        assert result.exit_code == 1
        assert "Could not read" in result.stdout

    def test_status_unknown_job(self) -> None:
        result = runner.invoke(app, ["jobs", "status", "42"])

        assert result.exit_code == 1
        assert "not found" in result.stdout

    def test_list_empty(self) -> None:
        result = runner.invoke(app, ["jobs", "list"])

        assert result.exit_code == 0
        assert "No jobs found" in result.stdout


class TestCredentialCommands:
    """Tests for the credentials command group."""

    def test_add_and_list(self, engine: Engine) -> None:
        added = runner.invoke(
            app, ["credentials", "add", "--name", "cli", "--token", "cli-token", "--group", "g1"]
        )
        listed = runner.invoke(app, ["credentials", "list", "--group", "g1"])

        assert added.exit_code == 0
        assert "Credential added" in added.stdout
        assert "cli" in listed.stdout
        assert "cli-token" not in listed.stdout
        assert engine.pool.usage_snapshot("g1")[0]["name"] == "cli"

    def test_generate_key(self) -> None:
        result = runner.invoke(app, ["credentials", "generate-key"])

        assert result.exit_code == 0
        assert "ENCRYPTION_MASTER_KEY" in result.stdout


class TestQueueCommands:
    """Tests for the queue command group."""

    def test_status(self, credential_id: int) -> None:
        result = runner.invoke(app, ["queue", "status"])

        assert result.exit_code == 0
        assert "Queue depth:" in result.stdout

    def test_cancel_unknown(self) -> None:
        result = runner.invoke(app, ["queue", "cancel", "7"])

        assert result.exit_code == 1
