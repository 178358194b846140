"""Rolling sync and request logs shown in the settings window."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, Response

from src.dependencies import Store
from src.models.sync import RequestLogEntry, SyncLogEntry

router = APIRouter(prefix="/logs", tags=["logs"])


@router.get("/sync", response_model=list[SyncLogEntry])
async def list_sync_logs(
    store: Store,
    source: str | None = Query(default=None),
) -> Any:
    return store.get_sync_logs(source)


@router.delete("/sync", status_code=204)
async def clear_sync_logs(store: Store) -> Response:
    store.clear_sync_logs()
    return Response(status_code=204)


@router.get("/requests", response_model=list[RequestLogEntry])
async def list_request_logs(store: Store) -> Any:
    return store.get_request_logs()


@router.delete("/requests", status_code=204)
async def clear_request_logs(store: Store) -> Response:
    store.clear_request_logs()
    return Response(status_code=204)
