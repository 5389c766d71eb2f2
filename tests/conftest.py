"""Shared fixtures for the weekgrid test suite."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from weekgrid.calendar.backoff import BackoffPolicy
from weekgrid.calendar.lifecycle import PlanBlockLifecycle
from weekgrid.calendar.sync import SyncOrchestrator
from weekgrid.testing import FakeClock, InMemoryBackoffStore, InMemoryPlanStore, StubRemote


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryPlanStore:
    return InMemoryPlanStore()


@pytest.fixture
def backoff() -> InMemoryBackoffStore:
    return InMemoryBackoffStore(BackoffPolicy(base_ms=30_000, cap_ms=600_000))


@pytest.fixture
def remote() -> StubRemote:
    return StubRemote()


@pytest.fixture
def orchestrator(remote, backoff, clock) -> SyncOrchestrator:
    return SyncOrchestrator(remote, backoff, interval_seconds=600, clock=clock)


@pytest.fixture
def lifecycle(store, orchestrator) -> PlanBlockLifecycle:
    return PlanBlockLifecycle(store, orchestrator)


@pytest.fixture
def mock_pool():
    """asyncpg pool double whose ``acquire()`` yields a connection with a transaction.

    The connection is exposed as ``pool.conn``.
    """
    pool = AsyncMock()
    conn = AsyncMock()

    transaction = MagicMock()
    transaction.__aenter__ = AsyncMock(return_value=None)
    transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=transaction)

    acquire = MagicMock()
    acquire.__aenter__ = AsyncMock(return_value=conn)
    acquire.__aexit__ = AsyncMock(return_value=False)
    pool.acquire = MagicMock(return_value=acquire)
    pool.conn = conn
    return pool
