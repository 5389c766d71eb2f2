"""Tests for the WeekgridRuntime startup and shutdown sequence.

Uses mocking to avoid a real database and remote calendar.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from weekgrid import daemon
from weekgrid.calendar.remote import DisconnectedRemote, GoogleCalendarRemote
from weekgrid.calendar.store import PostgresPlanStore
from weekgrid.calendar.workspace import CalendarWorkspace, ViewMode
from weekgrid.config import GoogleConfig, WeekgridConfig
from weekgrid.daemon import WeekgridRuntime, build_remote

pytestmark = pytest.mark.unit


@pytest.fixture
def db():
    db = MagicMock()
    db.db_name = "weekgrid_test"
    db.url = "postgresql://u:p@localhost:5432/weekgrid_test"
    db.provision = AsyncMock()
    db.connect = AsyncMock(return_value=AsyncMock())
    db.close = AsyncMock()
    return db


@pytest.fixture
def migrate(monkeypatch):
    run = AsyncMock()
    monkeypatch.setattr(daemon, "run_migrations", run)
    return run


class TestBuildRemote:
    def test_disabled_google_is_disconnected(self, store):
        assert isinstance(build_remote(WeekgridConfig(), store), DisconnectedRemote)

    def test_enabled_google(self, store):
        config = WeekgridConfig(
            google=GoogleConfig(
                enabled=True,
                client_id="id",
                client_secret="secret",
                refresh_token="refresh",
                email="student@example.com",
            )
        )
        assert isinstance(build_remote(config, store), GoogleCalendarRemote)


class TestStartup:
    async def test_startup_sequence(self, db, migrate):
        runtime = WeekgridRuntime(WeekgridConfig(), db=db)

        await runtime.start()

        db.provision.assert_awaited_once()
        db.connect.assert_awaited_once()
        migrate.assert_awaited_once_with(db.url, chain="core")
        assert isinstance(runtime.store, PostgresPlanStore)
        assert isinstance(runtime.remote, DisconnectedRemote)
        assert runtime.sync is not None and not runtime.sync.running
        await runtime.shutdown()

    async def test_migrations_can_be_skipped(self, db, migrate):
        config = WeekgridConfig()
        config.database.run_migrations = False
        runtime = WeekgridRuntime(config, db=db)

        await runtime.start()

        migrate.assert_not_awaited()
        await runtime.shutdown()

    async def test_provision_failure_stops_startup(self, db, migrate):
        db.provision.side_effect = OSError("connection refused")
        runtime = WeekgridRuntime(WeekgridConfig(), db=db)

        with pytest.raises(OSError):
            await runtime.start()

        db.connect.assert_not_awaited()
        migrate.assert_not_awaited()
        assert runtime.store is None

    async def test_poller_starts_in_server_mode(self, db, migrate):
        runtime = WeekgridRuntime(WeekgridConfig(), db=db)

        await runtime.start(start_poller=True)
        assert runtime.sync.running

        await runtime.shutdown()
        assert not runtime.sync.running


class TestWorkspace:
    def test_requires_started_runtime(self, db):
        runtime = WeekgridRuntime(WeekgridConfig(), db=db)
        with pytest.raises(RuntimeError, match="not started"):
            runtime.workspace()

    async def test_workspace_uses_grid_config(self, db, migrate):
        config = WeekgridConfig()
        config.grid.hour_height = 48.0
        runtime = WeekgridRuntime(config, db=db)
        await runtime.start()

        workspace = runtime.workspace(view=ViewMode.DAY)

        assert isinstance(workspace, CalendarWorkspace)
        assert workspace.view is ViewMode.DAY
        assert workspace.drag.geometry.hour_height == 48.0
        await runtime.shutdown()


class TestShutdown:
    async def test_closes_pool_and_remote(self, db, migrate):
        runtime = WeekgridRuntime(WeekgridConfig(), db=db)
        await runtime.start()
        runtime.remote = MagicMock()
        runtime.remote.shutdown = AsyncMock(side_effect=RuntimeError("boom"))

        await runtime.shutdown()

        runtime.remote.shutdown.assert_awaited_once()
        db.close.assert_awaited_once()
