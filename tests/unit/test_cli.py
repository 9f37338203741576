"""Tests for the storyloop CLI commands."""

import asyncio

import pytest
from typer.testing import CliRunner

from storyloop import __version__
from storyloop.cli import app
from storyloop.models import RoleId


@pytest.fixture
def runner():
    """Create a CLI runner for testing."""
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "storyloop.yaml"
    path.write_text(f"repo_root: {tmp_path}\nstate_dir: .storyloop\n")
    return path


@pytest.fixture
def invoke(runner, config_file):
    def _invoke(*args, input=None):
        return runner.invoke(app, ["--config", str(config_file), *args], input=input)
    return _invoke


class TestEntry:

    def test_version(self, runner):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_no_command_prints_help(self, invoke):
        result = invoke()
        assert result.exit_code == 0
        assert "develop" in result.output

    def test_invalid_config_exits_2(self, runner, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text("retry:\n  max_attempts: 0\n")
        result = runner.invoke(app, ["--config", str(bad), "status", "notes"])
        assert result.exit_code == 2
        assert "Configuration error" in result.output


class TestStatusAndHistory:

    def test_status_of_unknown_project(self, invoke):
        result = invoke("status", "fresh")
        assert result.exit_code == 0
        assert "Not decomposed" in result.output

    def test_status_of_seeded_project(self, invoke, seed_project):
        asyncio.run(seed_project())
        result = invoke("status", "notes")
        assert result.exit_code == 0
        assert "Task Creation" in result.output
        assert "0/0 completed" in result.output

    def test_history_lists_records(self, invoke, seed_project):
        asyncio.run(seed_project())
        result = invoke("history", "notes")
        assert result.exit_code == 0
        assert "epic-story" in result.output
        assert "requirement-analyzer" in result.output

    def test_history_unknown_role(self, invoke):
        result = invoke("history", "notes", "--role", "astronaut")
        assert result.exit_code == 1
        assert "Unknown role" in result.output

    def test_history_empty(self, invoke):
        result = invoke("history", "notes")
        assert result.exit_code == 0
        assert "No records" in result.output


class TestControlCommands:

    def test_pause_then_resume_without_restart(self, invoke, store):
        result = invoke("pause", "notes")
        assert result.exit_code == 0
        assert "Pause requested" in result.output
        assert asyncio.run(store.get_control("notes")).paused

        result = invoke("resume", "notes", "--no-restart")
        assert result.exit_code == 0
        assert "Resumed notes" in result.output
        assert not asyncio.run(store.get_control("notes")).paused
        controls = asyncio.run(store.list_records("notes", [RoleId.PIPELINE_CONTROL]))
        assert [c.output.action for c in controls] == ["pause", "resume"]

    def test_reset_asks_for_confirmation(self, invoke):
        result = invoke("reset", "notes", input="n\n")
        assert result.exit_code == 0
        assert "Archived" not in result.output

    def test_reset_with_yes(self, invoke, write_record, store):
        asyncio.run(write_record("notes", RoleId.PIPELINE_CONTROL, None))
        result = invoke("reset", "notes", "--yes")
        assert result.exit_code == 0
        assert "Archived 1 development records" in result.output
        assert asyncio.run(store.list_records("notes")) == []

    def test_develop_without_catalog_exits_1(self, invoke):
        result = invoke("develop", "notes")
        assert result.exit_code == 1
        assert "MissingPreconditionError" in result.output

    def test_run_with_missing_document(self, invoke, tmp_path):
        result = invoke("run", "notes", "--document", str(tmp_path / "nope.md"))
        assert result.exit_code == 1
        assert "Document not found" in result.output

