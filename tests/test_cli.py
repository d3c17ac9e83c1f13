"""Tests for the CLI."""

import json
import os
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from fleet_orchestrator.cli import main
from fleet_orchestrator.core import initiatives as initiatives_mod
from fleet_orchestrator.core import tasks as tasks_mod
from fleet_orchestrator.core import users as users_mod
from fleet_orchestrator.db.engine import init_db
from fleet_orchestrator.integrations.blackbox import BlackboxAPIError, BlackboxTask


@pytest.fixture
def cli_env():
    """Set up a temp environment for CLI testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        env = {"FO_DB_PATH": str(db_path), "BLACKBOX_API_KEY": "bb-key"}
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        yield CliRunner(), db_path

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


def _seed(db_path):
    """A user with one initiative and a completed/assigned task pair."""
    db = init_db(db_path)
    try:
        user = users_mod.create_user(db, "dev@example.com", github_token="ghp_dev")
        initiative = initiatives_mod.create_initiative(db, user.id, "Backend", "backend")
        first = tasks_mod.create_task(db, initiative.id, "Write schema", status="running")
        first = tasks_mod.set_external_id(db, first.id, "bb-1")
        second = tasks_mod.create_task(db, initiative.id, "Write API", depends_on=[first.id])
        return first, second
    finally:
        db.close()


def _fake_gateway():
    gateway = MagicMock()
    gateway.__enter__.return_value = gateway
    gateway.__exit__.return_value = False
    return gateway


class TestCLI:
    def test_help(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "Fleet Orchestrator" in result.output

    def test_user_add_and_list(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["user", "add", "dev@example.com", "--name", "Dev"])
        assert result.exit_code == 0
        assert "Token:" in result.output

        result = runner.invoke(main, ["user", "add", "dev@example.com"])
        assert result.exit_code == 1

        runner.invoke(main, ["user", "connect-github", "dev@example.com", "ghp_x", "--username", "octo"])
        result = runner.invoke(main, ["user", "list"])
        assert "dev@example.com" in result.output
        assert "[github: octo]" in result.output

    def test_unknown_user(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["initiative", "list", "--user", "ghost@example.com"])
        assert result.exit_code == 1
        assert "No user" in result.output

    def test_initiative_and_repo(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["user", "add", "dev@example.com"])
        result = runner.invoke(
            main, ["initiative", "create", "Payments", "payments", "--user", "dev@example.com"]
        )
        assert result.exit_code == 0
        assert "payments" in result.output

        result = runner.invoke(
            main, ["initiative", "create", "Bad", "Bad Slug", "--user", "dev@example.com"]
        )
        assert result.exit_code == 1

        result = runner.invoke(main, ["initiative", "list", "--user", "dev@example.com"])
        assert "payments: Payments (active)" in result.output

        result = runner.invoke(
            main,
            [
                "repo", "add", "https://github.com/acme/api",
                "--user", "dev@example.com", "--name", "api", "--full-name", "acme/api",
            ],
        )
        assert result.exit_code == 0
        result = runner.invoke(main, ["repo", "list", "--user", "dev@example.com"])
        assert "acme/api [main]" in result.output


class TestTaskCommands:
    def test_list_and_show(self, cli_env):
        runner, db_path = cli_env
        first, second = _seed(db_path)

        result = runner.invoke(main, ["task", "list", "--user", "dev@example.com", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["total"] == 2

        result = runner.invoke(main, ["task", "show", second.id])
        assert result.exit_code == 0
        assert f"Depends on: {first.id}" in result.output
        assert "created" in result.output

        result = runner.invoke(main, ["task", "show", "missing"])
        assert result.exit_code == 1

    def test_sync(self, cli_env):
        runner, db_path = cli_env
        first, second = _seed(db_path)
        gateway = _fake_gateway()
        gateway.get_task.return_value = BlackboxTask(id="bb-1", status="completed", progress=100)

        with patch("fleet_orchestrator.cli.create_client", return_value=gateway):
            result = runner.invoke(main, ["task", "sync", first.id])

        assert result.exit_code == 0
        assert "completed" in result.output
        db = init_db(db_path)
        try:
            assert tasks_mod.get_task(db, second.id).status == "assigned"
        finally:
            db.close()

    def test_sync_requires_dispatch(self, cli_env):
        runner, db_path = cli_env
        _, second = _seed(db_path)
        result = runner.invoke(main, ["task", "sync", second.id])
        assert result.exit_code == 1
        assert "not been dispatched" in result.output

    def test_dispatch_assigned(self, cli_env):
        runner, db_path = cli_env
        first, second = _seed(db_path)
        db = init_db(db_path)
        try:
            tasks_mod.set_status(db, first.id, "completed")
            tasks_mod.set_status(db, second.id, "assigned")
        finally:
            db.close()

        gateway = _fake_gateway()
        gateway.create_task.return_value = BlackboxTask(id="bb-2")
        with patch("fleet_orchestrator.cli.create_client", return_value=gateway):
            result = runner.invoke(main, ["task", "dispatch", "--all-assigned"])

        assert result.exit_code == 0
        assert "bb-2" in result.output
        assert gateway.create_task.call_args.kwargs["credentials"] == "ghp_dev"

        db = init_db(db_path)
        try:
            task = tasks_mod.get_task(db, second.id)
            assert task.status == "running"
            assert task.blackbox_task_id == "bb-2"
        finally:
            db.close()

    def test_dispatch_uses_stored_target(self, cli_env):
        runner, db_path = cli_env
        db = init_db(db_path)
        try:
            user = users_mod.create_user(db, "dev@example.com", github_token="ghp_dev")
            initiative = initiatives_mod.create_initiative(db, user.id, "Web", "web")
            task = tasks_mod.create_task(
                db,
                initiative.id,
                "Ship the banner",
                status="assigned",
                repo_url="https://github.com/acme/web",
                branch="release",
                agent="codex",
                model="gpt-5-codex",
            )
        finally:
            db.close()

        gateway = _fake_gateway()
        gateway.create_task.return_value = BlackboxTask(id="bb-9")
        with patch("fleet_orchestrator.cli.create_client", return_value=gateway):
            result = runner.invoke(main, ["task", "dispatch", task.id])

        assert result.exit_code == 0
        kwargs = gateway.create_task.call_args.kwargs
        assert kwargs["repo_url"] == "https://github.com/acme/web"
        assert kwargs["branch"] == "release"
        assert kwargs["agent"] == "codex"
        assert kwargs["model"] == "gpt-5-codex"

    def test_dispatch_skips_repo_task_without_credential(self, cli_env):
        runner, db_path = cli_env
        db = init_db(db_path)
        try:
            user = users_mod.create_user(db, "dev@example.com")
            initiative = initiatives_mod.create_initiative(db, user.id, "Web", "web")
            task = tasks_mod.create_task(
                db,
                initiative.id,
                "Ship the banner",
                status="assigned",
                repo_url="https://github.com/acme/web",
            )
        finally:
            db.close()

        gateway = _fake_gateway()
        with patch("fleet_orchestrator.cli.create_client", return_value=gateway):
            result = runner.invoke(main, ["task", "dispatch", "--all-assigned"])

        assert result.exit_code == 1
        assert "GitHub connection required" in result.output
        gateway.create_task.assert_not_called()
        db = init_db(db_path)
        try:
            assert tasks_mod.get_task(db, task.id).status == "assigned"
        finally:
            db.close()

    def test_dispatch_rejects_unassigned(self, cli_env):
        runner, db_path = cli_env
        _, second = _seed(db_path)
        result = runner.invoke(main, ["task", "dispatch", second.id])
        assert result.exit_code == 1

    def test_wait(self, cli_env):
        runner, db_path = cli_env
        first, _ = _seed(db_path)
        gateway = _fake_gateway()
        done = BlackboxTask(id="bb-1", status="failed", error="tests failed")
        gateway.wait_for_completion.return_value = done
        gateway.get_task.return_value = done

        with patch("fleet_orchestrator.cli.create_client", return_value=gateway):
            result = runner.invoke(main, ["task", "wait", first.id, "--interval", "0"])

        assert result.exit_code == 1
        assert "failed" in result.output

    def test_gateway_error(self, cli_env):
        runner, db_path = cli_env
        first, _ = _seed(db_path)
        gateway = _fake_gateway()
        gateway.get_task.side_effect = BlackboxAPIError("HTTP 500")
        with patch("fleet_orchestrator.cli.create_client", return_value=gateway):
            result = runner.invoke(main, ["task", "sync", first.id])
        assert result.exit_code == 1
        assert "HTTP 500" in result.output


class TestMetricsCommand:
    def test_metrics(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["metrics", "--hours", "6"])
        assert result.exit_code == 0
        assert "Last 6h:" in result.output
        assert "tasks completed: 0" in result.output
