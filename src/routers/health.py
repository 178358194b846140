"""Health check endpoint."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

router = APIRouter(tags=["system"])
logger = logging.getLogger("contexter.health")


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness probe. Returns 200 if the process is up.

    Reports ``degraded`` while the server URL or device secret is missing,
    since every upload would fail with a configuration error.
    """
    settings = request.app.state.settings
    configured = bool(settings.server_url and settings.device_secret)
    registry = getattr(request.app.state, "registry", None)
    if not configured:
        logger.debug("Health check: server URL or device secret missing")

    return {
        "status": "healthy" if configured else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "server": "configured" if configured else "not configured",
        "encryption": "enabled" if settings.encryption_key else "disabled",
        "services": registry.names() if registry is not None else [],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
