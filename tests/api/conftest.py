"""Shared fixtures for weekgrid API tests.

The app is built with :func:`create_app` and its router dependency stubs are
overridden with the in-memory store, lifecycle and orchestrator fixtures.
``httpx.ASGITransport`` does not run the lifespan, so no database is touched.
"""

from __future__ import annotations

import httpx
import pytest
from fastapi import FastAPI

from weekgrid.api.app import create_app
from weekgrid.api.routers.calendar import _get_lifecycle, _get_store, _get_sync


@pytest.fixture
def app(store, lifecycle, orchestrator) -> FastAPI:
    app = create_app()
    app.dependency_overrides[_get_store] = lambda: store
    app.dependency_overrides[_get_lifecycle] = lambda: lifecycle
    app.dependency_overrides[_get_sync] = lambda: orchestrator
    return app


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client
