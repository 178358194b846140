"""Start, cancel and poll historical backfills."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException

from src.dependencies import Registry
from src.models.sync import BackfillProgressRead, BackfillStartRequest
from src.sync.backfill import BackfillEngine, BackfillState
from src.sync.config_loader import get_sync_defaults

router = APIRouter(prefix="/services/{name}/backfill", tags=["backfill"])


def _engine(registry: Registry, name: str) -> BackfillEngine:
    try:
        return registry.get_backfill(name)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=exc.args[0])


def _progress(state: BackfillState) -> BackfillProgressRead:
    return BackfillProgressRead(
        status=state.status.value,
        phase=state.phase.value if state.phase else None,
        current=state.current,
        total=state.total,
        message_count=state.message_count,
        items_uploaded=state.items_uploaded,
        pct_complete=state.pct_complete,
        failed_batch=state.failed_batch,
        error=state.error,
    )


@router.get("", response_model=BackfillProgressRead)
async def get_backfill_progress(name: str, registry: Registry) -> Any:
    return _progress(_engine(registry, name).get_progress())


@router.post("", response_model=BackfillProgressRead, status_code=202)
async def start_backfill(
    name: str, registry: Registry, body: BackfillStartRequest | None = None
) -> Any:
    """Start a backfill in the background.  Poll GET for progress."""
    _engine(registry, name)
    days = (body.days if body else None) or get_sync_defaults().backfill.default_window_days
    return _progress(await registry.start_backfill(name, days))


@router.post("/cancel", response_model=BackfillProgressRead)
async def cancel_backfill(name: str, registry: Registry) -> Any:
    engine = _engine(registry, name)
    engine.cancel()
    return _progress(engine.get_progress())
