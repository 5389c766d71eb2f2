"""weekgrid API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler for startup/shutdown of the database pool and sync poller
- Health endpoint at GET /api/health
- The calendar router under /api/calendar
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from weekgrid import __version__
from weekgrid.api.deps import init_runtime, shutdown_runtime, wire_dependencies
from weekgrid.api.middleware import register_error_handlers
from weekgrid.api.routers.calendar import router as calendar_router
from weekgrid.config import WeekgridConfig

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle for the weekgrid runtime.

    On startup: provision the database, run migrations, start the sync poller
    On shutdown: stop the poller and close all connections cleanly
    """
    config: WeekgridConfig = app.state.config
    await init_runtime(config)
    wire_dependencies(app)
    logger.info("weekgrid API ready")

    yield

    await shutdown_runtime()


def create_app(
    config: WeekgridConfig | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Parsed weekgrid configuration.  Defaults to built-in defaults.
    cors_origins:
        Allowed CORS origins. Defaults to ["http://localhost:5173"] for
        a local Vite dev server.
    """
    if cors_origins is None:
        cors_origins = ["http://localhost:5173"]

    app = FastAPI(
        title="weekgrid API",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config or WeekgridConfig()
    app.router.redirect_slashes = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(calendar_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
