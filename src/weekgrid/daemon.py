"""weekgrid runtime: wires config, database, remote calendar and sync together.

The same runtime backs the HTTP server and the one-shot CLI commands.

Startup sequence:
1. Initialize telemetry
2. Provision the database and open a pool
3. Run core Alembic migrations
4. Build the plan store and the backoff store
5. Build the remote calendar (Google or disconnected)
6. Build the sync orchestrator and the lifecycle controller
7. Start the sync poller (server mode only)
"""

from __future__ import annotations

import logging

from weekgrid.calendar.backoff import StateBackoffStore
from weekgrid.calendar.drag import DragRescheduler
from weekgrid.calendar.lifecycle import PlanBlockLifecycle
from weekgrid.calendar.remote import DisconnectedRemote, GoogleCalendarRemote, RemoteCalendar
from weekgrid.calendar.store import PlanStore, PostgresPlanStore
from weekgrid.calendar.sync import SyncOrchestrator
from weekgrid.calendar.workspace import CalendarWorkspace, ViewMode
from weekgrid.config import WeekgridConfig
from weekgrid.core.telemetry import init_telemetry
from weekgrid.db import Database
from weekgrid.migrations import run_migrations

logger = logging.getLogger(__name__)


def build_remote(config: WeekgridConfig, store: PlanStore) -> RemoteCalendar:
    """Pick the remote calendar implementation for *config*."""
    google = config.google
    if not google.enabled:
        logger.info("Google Calendar sync disabled; running disconnected")
        return DisconnectedRemote()
    return GoogleCalendarRemote(
        store,
        google.credentials(),
        email=google.email,
        plan_calendar_name=google.plan_calendar_name,
        window_past_days=google.window_past_days,
        window_future_days=google.window_future_days,
    )


class WeekgridRuntime:
    """Owns the long-lived collaborators of one weekgrid process."""

    def __init__(self, config: WeekgridConfig, db: Database | None = None) -> None:
        self.config = config
        self.db = db or Database.from_env(config.database.name)
        self.store: PlanStore | None = None
        self.remote: RemoteCalendar | None = None
        self.sync: SyncOrchestrator | None = None
        self.lifecycle: PlanBlockLifecycle | None = None
        self._started = False

    async def start(self, *, start_poller: bool = False) -> None:
        """Execute the startup sequence.

        A failure at any step prevents subsequent steps.
        """
        # 1. Initialize telemetry
        init_telemetry("weekgrid")

        # 2. Provision database
        await self.db.provision()
        pool = await self.db.connect()

        # 3. Run core Alembic migrations
        if self.config.database.run_migrations:
            await run_migrations(self.db.url, chain="core")

        # 4. Stores
        self.store = PostgresPlanStore(pool)
        backoff = StateBackoffStore(pool, self.config.sync.backoff_policy())

        # 5. Remote calendar
        self.remote = build_remote(self.config, self.store)

        # 6. Orchestration
        self.sync = SyncOrchestrator(
            self.remote,
            backoff,
            interval_seconds=self.config.sync.interval_minutes * 60,
        )
        self.lifecycle = PlanBlockLifecycle(
            self.store,
            self.sync,
            window=self.config.planning.window(),
        )
        self._started = True

        # 7. Background sync
        if start_poller:
            await self.sync.start()

        logger.info("weekgrid runtime started (db=%s)", self.db.db_name)

    def workspace(self, *, view: ViewMode = ViewMode.WEEK) -> CalendarWorkspace:
        """Create a view controller bound to this runtime."""
        if not self._started or self.store is None or self.lifecycle is None or self.sync is None:
            raise RuntimeError("weekgrid runtime is not started")
        drag = DragRescheduler(self.lifecycle, geometry=self.config.grid.geometry())
        return CalendarWorkspace(self.store, self.lifecycle, self.sync, drag, view=view)

    async def shutdown(self) -> None:
        """Graceful shutdown.

        1. Stop the sync poller
        2. Release remote provider resources
        3. Close DB pool
        """
        # 1. Stop the sync poller
        if self.sync is not None:
            await self.sync.stop()

        # 2. Remote provider
        if self.remote is not None:
            try:
                await self.remote.shutdown()
            except Exception:
                logger.exception("Error while shutting down remote calendar")

        # 3. Close DB pool
        await self.db.close()
        self._started = False
        logger.info("weekgrid runtime shutdown complete")
