"""Tests for the CLI commands."""

from __future__ import annotations

import asyncio
from datetime import date

import pytest
from click.testing import CliRunner

from weekgrid import __version__
from weekgrid import cli as cli_module
from weekgrid.calendar.drag import DragRescheduler
from weekgrid.calendar.models import PlanBlockStatus
from weekgrid.calendar.workspace import CalendarWorkspace, ViewMode
from weekgrid.cli import _parse_anchor, cli
from weekgrid.testing import make_item

pytestmark = pytest.mark.unit


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def _no_logging_setup(monkeypatch):
    """Keep CLI invocations from replacing the root logging handlers."""
    calls: list[tuple] = []
    monkeypatch.setattr(
        cli_module, "configure_logging", lambda *args, **kwargs: calls.append((args, kwargs))
    )
    return calls


@pytest.fixture
def fake_runtime(monkeypatch, store, lifecycle, orchestrator):
    """Run CLI actions against in-memory collaborators instead of a database."""
    seen: dict = {}

    def _run(config, view, anchor, action):
        seen["config"] = config
        seen["anchor"] = anchor

        async def _main():
            workspace = CalendarWorkspace(
                store,
                lifecycle,
                orchestrator,
                DragRescheduler(lifecycle),
                anchor=anchor,
                view=ViewMode(view),
            )
            await workspace.refresh()
            return await action(workspace)

        return asyncio.run(_main())

    monkeypatch.setattr(cli_module, "_run_with_workspace", _run)
    return seen


class TestVersion:
    def test_version_flag(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("serve", "migrate", "show", "generate", "sync"):
            assert command in result.output


class TestConfigLoading:
    def test_missing_explicit_config_exits(self, runner, tmp_path, fake_runtime):
        result = runner.invoke(cli, ["--config", str(tmp_path / "missing.toml"), "show"])

        assert result.exit_code == 1
        assert "Config error" in result.output
        assert "config" not in fake_runtime

    def test_default_config_when_no_file(self, runner, fake_runtime, _no_logging_setup):
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ["show", "--anchor", "2026-03-04"])

        assert result.exit_code == 0, result.output
        assert fake_runtime["config"].server.port == 8400
        [(args, kwargs)] = _no_logging_setup
        assert args[:2] == ("INFO", "text")
        assert kwargs == {"component": "cli"}

    def test_explicit_config_is_used(self, runner, tmp_path, fake_runtime):
        path = tmp_path / "weekgrid.toml"
        path.write_text('[logging]\nlevel = "debug"\n')

        result = runner.invoke(cli, ["--config", str(path), "show", "--anchor", "2026-03-04"])

        assert result.exit_code == 0, result.output
        assert fake_runtime["config"].logging.level == "DEBUG"


class TestParseAnchor:
    def test_iso_date(self):
        assert _parse_anchor("2026-03-04") == date(2026, 3, 4)

    def test_default_is_today(self):
        assert _parse_anchor(None) == date.today()

    def test_bad_date_is_usage_error(self, runner, fake_runtime):
        result = runner.invoke(cli, ["show", "--anchor", "next tuesday"])
        assert result.exit_code == 2
        assert "YYYY-MM-DD" in result.output


class TestShow:
    def test_prints_items_per_day(self, runner, store, fake_runtime):
        store.items.append(
            make_item("ce_1", "2026-03-04T10:00:00", "2026-03-04T11:00:00", title="Lecture")
        )

        result = runner.invoke(cli, ["show", "--anchor", "2026-03-04", "--view", "day"])

        assert result.exit_code == 0, result.output
        lines = result.output.splitlines()
        assert lines[0] == "2026-03-04 (Wed)"
        assert "10:00-11:00" in lines[1]
        assert "Lecture" in lines[1]

    def test_free_days(self, runner, fake_runtime):
        result = runner.invoke(cli, ["show", "--anchor", "2026-03-04"])

        assert result.exit_code == 0, result.output
        assert result.output.count("(free)") == 7


class TestGenerate:
    def test_creates_suggestions(self, runner, store, fake_runtime):
        result = runner.invoke(cli, ["generate", "--anchor", "2026-03-04"])

        assert result.exit_code == 0, result.output
        assert "Created 7 suggested block(s)" in result.output
        suggested = [b for b in store.blocks.values() if b.status is PlanBlockStatus.SUGGESTED]
        assert len(suggested) == 7


class TestSync:
    def test_success(self, runner, remote, fake_runtime):
        result = runner.invoke(cli, ["sync"])

        assert result.exit_code == 0, result.output
        assert "Sync succeeded" in result.output
        assert remote.calls == 1

    def test_failure_exits_nonzero(self, runner, remote, fake_runtime):
        remote.default = False

        result = runner.invoke(cli, ["sync"])

        assert result.exit_code == 1
        assert "Sync failed: remote reported failure" in result.output
        assert "Next attempt allowed after" in result.output

    def test_disconnected_is_skipped(self, runner, remote, fake_runtime):
        remote.connected = False

        result = runner.invoke(cli, ["sync"])

        assert result.exit_code == 0
        assert "Sync skipped" in result.output
        assert remote.calls == 0
