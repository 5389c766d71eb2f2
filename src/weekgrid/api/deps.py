"""Runtime dependencies for the weekgrid API.

Holds the process-wide :class:`WeekgridRuntime` and wires its collaborators
into the router-level dependency stubs.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from weekgrid.calendar.lifecycle import PlanBlockLifecycle
from weekgrid.calendar.store import PlanStore
from weekgrid.calendar.sync import SyncOrchestrator
from weekgrid.config import WeekgridConfig
from weekgrid.daemon import WeekgridRuntime

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = logging.getLogger(__name__)

_runtime: WeekgridRuntime | None = None


def get_runtime() -> WeekgridRuntime:
    if _runtime is None:
        raise RuntimeError("weekgrid runtime not initialized")
    return _runtime


def get_store() -> PlanStore:
    runtime = get_runtime()
    if runtime.store is None:
        raise RuntimeError("PlanStore not initialized")
    return runtime.store


def get_lifecycle() -> PlanBlockLifecycle:
    runtime = get_runtime()
    if runtime.lifecycle is None:
        raise RuntimeError("PlanBlockLifecycle not initialized")
    return runtime.lifecycle


def get_sync() -> SyncOrchestrator:
    runtime = get_runtime()
    if runtime.sync is None:
        raise RuntimeError("SyncOrchestrator not initialized")
    return runtime.sync


async def init_runtime(config: WeekgridConfig) -> WeekgridRuntime:
    """Start the runtime with the background sync poller enabled."""
    global _runtime
    runtime = WeekgridRuntime(config)
    await runtime.start(start_poller=True)
    _runtime = runtime
    return runtime


async def shutdown_runtime() -> None:
    global _runtime
    if _runtime is not None:
        await _runtime.shutdown()
        _runtime = None


def wire_dependencies(app: FastAPI) -> None:
    """Override the router-level dependency stubs with runtime accessors."""
    from weekgrid.api.routers import calendar

    app.dependency_overrides[calendar._get_store] = get_store
    app.dependency_overrides[calendar._get_lifecycle] = get_lifecycle
    app.dependency_overrides[calendar._get_sync] = get_sync
    logger.debug("Wired runtime dependencies for calendar router")
