"""Control endpoints for the recurring sync services."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException

from src.dependencies import Registry, Store
from src.models.sync import (
    ServiceStatusRead,
    SyncLogEntry,
    SyncServiceConfig,
    SyncServiceConfigUpdate,
)
from src.sync.scheduler import SyncScheduler

router = APIRouter(prefix="/services", tags=["services"])


def _scheduler(registry: Registry, name: str) -> SyncScheduler:
    try:
        return registry.get_scheduler(name)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown service '{name}'")


def _status(scheduler: SyncScheduler) -> ServiceStatusRead:
    status = scheduler.get_status()
    return ServiceStatusRead(
        name=status.name,
        enabled=status.enabled,
        interval_minutes=status.interval_minutes,
        status=status.status.value,
        is_running=status.is_running,
        is_syncing=status.is_syncing,
        next_run_time=status.next_run_time,
        time_until_next_run_ms=int(scheduler.get_time_until_next_run().total_seconds() * 1000),
        last_run_at=status.last_run_at,
        last_error=status.last_error,
        last_sync_log_id=status.last_sync_log_id,
    )


@router.get("", response_model=list[ServiceStatusRead])
async def list_services(registry: Registry) -> Any:
    return [_status(registry.get_scheduler(name)) for name in registry.names()]


@router.get("/{name}", response_model=ServiceStatusRead)
async def get_service(name: str, registry: Registry) -> Any:
    return _status(_scheduler(registry, name))


@router.get("/{name}/config", response_model=SyncServiceConfig)
async def get_service_config(name: str, registry: Registry, store: Store) -> Any:
    _scheduler(registry, name)
    return store.get_service_config(name)


@router.patch("/{name}/config", response_model=ServiceStatusRead)
async def update_service_config(
    name: str, body: SyncServiceConfigUpdate, registry: Registry
) -> Any:
    """Persist the change and restart the service so it takes effect."""
    scheduler = _scheduler(registry, name)
    await scheduler.apply_config(body)
    return _status(scheduler)


@router.post("/{name}/run", response_model=SyncLogEntry)
async def run_service_now(name: str, registry: Registry) -> Any:
    """Sync immediately.  Joins the running sync if one is in flight."""
    entry = await _scheduler(registry, name).run_now()
    if entry is None:
        raise HTTPException(status_code=409, detail=f"Service '{name}' is disabled")
    return entry
