"""calsync API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that builds the service from ``calsync.toml`` and starts
  auto-sync pollers for ``[calsync.sync] watch_user_ids``
- Health endpoint at GET /api/health
- The Google Calendar and OAuth routers
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from calsync.api.deps import get_service, init_service, shutdown_service
from calsync.api.middleware import register_error_handlers
from calsync.api.routers.google_calendar import router as google_calendar_router
from calsync.api.routers.oauth import router as oauth_router
from calsync.config import load_config
from calsync.core.telemetry import init_telemetry

logger = logging.getLogger(__name__)


def _lifespan_for(config_path: Path | None, manage_service: bool):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_service:
            config = load_config(config_path)
            init_telemetry()
            service = await init_service(config)
            for user_id in config.sync.watch_user_ids:
                service.scheduler.watch(user_id)
            logger.info(
                "calsync API started (auto-sync users=%d)", len(config.sync.watch_user_ids)
            )

        yield

        if manage_service:
            await shutdown_service()

    return lifespan


def create_app(
    cors_origins: list[str] | None = None,
    config_path: Path | None = None,
    manage_service: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    cors_origins:
        Allowed CORS origins. Defaults to ``["http://localhost:5173"]``.
    config_path:
        Explicit ``calsync.toml`` for the lifespan; see ``load_config``.
    manage_service:
        When false the lifespan leaves the service alone; callers install one
        with ``calsync.api.deps.set_service`` (used by tests).
    """
    if cors_origins is None:
        cors_origins = ["http://localhost:5173"]

    app = FastAPI(
        title="calsync API",
        version="0.1.0",
        lifespan=_lifespan_for(config_path, manage_service),
    )
    app.router.redirect_slashes = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(google_calendar_router)
    app.include_router(oauth_router)

    @app.get("/api/health")
    async def health():
        try:
            get_service()
        except RuntimeError:
            return {"status": "starting"}
        return {"status": "ok"}

    return app
