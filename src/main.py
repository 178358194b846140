"""Contexter sync engine: FastAPI control API + background sync services.

Run locally:
    python -m src.main            # host, port and reload from CONTEXTER_* settings
    uvicorn src.main:app --port 8765

The lifespan builds the config store, the transport and the service registry,
starts every enabled service, and stops them again on shutdown.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import uvicorn
from fastapi import FastAPI

from src.config import Settings, get_settings
from src.routers import backfill, health, logs, services
from src.services.store import ConfigStore
from src.services.transport import TransportClient
from src.sync.registry import SyncRegistry, build_registry

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("contexter")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings: Settings = app.state.settings
    logger.info(
        "Starting %s v%s [%s]",
        settings.app_name,
        settings.app_version,
        settings.environment,
    )

    store = ConfigStore(settings.store_path)
    transport = TransportClient(
        settings, device_id=store.device_id, on_request=store.add_request_log
    )
    registry: SyncRegistry = build_registry(settings, store, transport)
    app.state.store = store
    app.state.registry = registry

    await registry.start_all()
    logger.info("Sync services: %s", ", ".join(registry.names()) or "none")
    try:
        yield
    finally:
        await registry.stop_all()
        await transport.aclose()
        app.state.registry = None
        logger.info("%s shut down", settings.app_name)


# ---------- App factory ----------

def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title=f"{settings.app_name} Sync API",
        description=(
            "Local control API for the Contexter sync engine: service status, "
            "run-now, config changes, historical backfill and rolling logs."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url=None,
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.registry = None
    app.state.store = None

    # ---------- Health check (always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(services.router, prefix=v1_prefix)
    app.include_router(backfill.router, prefix=v1_prefix)
    app.include_router(logs.router, prefix=v1_prefix)

    return app


app = create_app()


def run() -> None:
    """Serve the control API on the configured localhost address."""
    settings = get_settings()
    uvicorn.run(
        "src.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
