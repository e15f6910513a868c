"""Sync API — FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configured origins)
- Lifespan handler that connects the database, ensures the schema, wires
  the sync services and starts the scheduler loop
- Health endpoint at GET /api/health
- The Google and settings routers
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from calcalc.api.deps import wire_dependencies
from calcalc.api.middleware import register_error_handlers
from calcalc.api.routers.google import router as google_router
from calcalc.api.routers.settings import router as settings_router
from calcalc.config import CalcalcConfig, load_config
from calcalc.db import Database, ensure_schema
from calcalc.services import SyncServices

logger = logging.getLogger(__name__)


async def _start_services(app: FastAPI) -> SyncServices | None:
    config: CalcalcConfig = app.state.config
    db = Database.from_env()
    try:
        await db.provision()
        await db.connect()
        await ensure_schema(db)
    except Exception:
        logger.warning(
            "Failed to initialize database %s; sync endpoints will be unavailable",
            db.db_name,
            exc_info=True,
        )
        await db.close()
        return None
    services = SyncServices.build(config, db)
    wire_dependencies(app, services)
    return services


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle for the database pool and the scheduler.

    When services were injected through ``create_app(services=...)`` they
    are used as-is and left open on shutdown.
    """
    # Startup
    owned = False
    services: SyncServices | None = getattr(app.state, "services", None)
    if services is None:
        services = await _start_services(app)
        owned = services is not None

    scheduler_task: asyncio.Task | None = None
    if owned and services is not None and services.config.scheduler.enabled:
        scheduler_task = asyncio.create_task(services.scheduler.run(), name="calcalc-scheduler")

    yield

    # Shutdown
    if scheduler_task is not None and services is not None:
        services.scheduler.stop()
        try:
            await asyncio.wait_for(scheduler_task, timeout=10)
        except TimeoutError:
            logger.warning("Scheduler did not stop in time; cancelling")
            scheduler_task.cancel()
    if owned and services is not None:
        await services.aclose()


def create_app(
    config: CalcalcConfig | None = None,
    services: SyncServices | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Service configuration.  Loaded with :func:`load_config` when omitted.
    services:
        Pre-built sync services.  When given, dependencies are wired
        immediately and the lifespan neither connects a database nor
        starts the scheduler.
    """
    if config is None:
        config = services.config if services is not None else load_config()

    app = FastAPI(
        title="CalCalc Sync API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.config = config
    app.state.services = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(google_router)
    app.include_router(settings_router)

    if services is not None:
        wire_dependencies(app, services)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
