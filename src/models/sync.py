"""Pydantic models for sync configuration, rolling logs, and the control API."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import Field

from src.models.base import ContexterBase, new_log_id, utc_now


# ---------- Service configuration ----------

class SyncServiceConfig(ContexterBase):
    enabled: bool = False
    interval_minutes: int = Field(default=60, ge=1, le=24 * 60)
    next_sync_after: datetime | None = None
    source_options: dict[str, Any] = Field(default_factory=dict)


class SyncServiceConfigUpdate(ContexterBase):
    enabled: bool | None = None
    interval_minutes: int | None = Field(default=None, ge=1, le=24 * 60)
    source_options: dict[str, Any] | None = None


# ---------- Rolling logs ----------

class SyncOutcomeKind(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class SyncLogEntry(ContexterBase):
    id: str = Field(default_factory=new_log_id)
    source: str
    timestamp: datetime = Field(default_factory=utc_now)
    outcome: SyncOutcomeKind
    item_count: int = 0
    error: str | None = None
    duration_ms: int = 0
    trigger: Literal["startup", "scheduled", "manual"] = "scheduled"


class RequestLogEntry(ContexterBase):
    id: str = Field(default_factory=new_log_id)
    timestamp: datetime = Field(default_factory=utc_now)
    method: str
    path: str
    status: Literal["success", "error"]
    status_code: int | None = None
    duration_ms: int
    error: str | None = None


# ---------- Persisted store ----------

class StoreSchema(ContexterBase):
    """Everything written to data.json."""

    version: int = 1
    device_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    services: dict[str, SyncServiceConfig] = Field(default_factory=dict)
    # service name → Cursor.to_json()
    watermarks: dict[str, dict[str, Any]] = Field(default_factory=dict)
    sync_logs: list[SyncLogEntry] = Field(default_factory=list)
    request_logs: list[RequestLogEntry] = Field(default_factory=list)


# ---------- Control API ----------

class ServiceStatusRead(ContexterBase):
    name: str
    enabled: bool
    interval_minutes: int
    status: str
    is_running: bool
    is_syncing: bool = False
    next_run_time: datetime | None = None
    time_until_next_run_ms: int = 0
    last_run_at: datetime | None = None
    last_error: str | None = None
    last_sync_log_id: str | None = None


class BackfillProgressRead(ContexterBase):
    status: str
    phase: str | None = None
    current: int
    total: int
    message_count: int | None = None
    items_uploaded: int
    pct_complete: float = 0.0
    failed_batch: int | None = None
    error: str | None = None


class BackfillStartRequest(ContexterBase):
    days: int | None = Field(default=None, ge=1, le=3650)
