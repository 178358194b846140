"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.services.store import ConfigStore
from src.sync.registry import SyncRegistry


def get_registry(request: Request) -> SyncRegistry:
    """Return the registry built by the app lifespan."""
    registry: SyncRegistry | None = getattr(request.app.state, "registry", None)
    if registry is None:
        raise HTTPException(status_code=503, detail="Sync engine is not running")
    return registry


def get_store(request: Request) -> ConfigStore:
    store: ConfigStore | None = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Sync engine is not running")
    return store


# Annotated shortcuts for route signatures
Registry = Annotated[SyncRegistry, Depends(get_registry)]
Store = Annotated[ConfigStore, Depends(get_store)]
