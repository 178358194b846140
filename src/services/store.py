"""Durable local settings for the sync engine.

Stores per-service ``SyncServiceConfig``, per-service watermarks, and the two
bounded rolling logs (sync runs, HTTP requests) in a single JSON file:

    ~/.contexter/data.json

The file is validated against ``StoreSchema`` on load and rewritten
atomically (temp file + rename) on every change.  Services missing from the
file are seeded from ``sync_defaults.yaml``.

Passing ``path=None`` keeps everything in memory (tests, dry runs).
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from src.models.sync import (
    RequestLogEntry,
    StoreSchema,
    SyncLogEntry,
    SyncServiceConfig,
    SyncServiceConfigUpdate,
)
from src.sync.base import Cursor
from src.sync.config_loader import SyncDefaults, get_sync_defaults

logger = logging.getLogger("contexter.store")


class ConfigStore:
    """JSON-file backed key/value store with typed helpers.

    Thread-safe; all writers hold ``_lock`` for the read-modify-write cycle.
    """

    def __init__(self, path: Path | None = None, defaults: SyncDefaults | None = None) -> None:
        self._path = path
        self._defaults = defaults or get_sync_defaults()
        self._lock = threading.RLock()
        self._data = self._load()
        self._seed_services()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> StoreSchema:
        if self._path is None or not self._path.exists():
            return StoreSchema()

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            data = StoreSchema.model_validate(raw)
            logger.debug("Loaded store from %s", self._path)
            return data
        except (json.JSONDecodeError, ValidationError) as exc:
            backup = self._path.with_suffix(".json.corrupt")
            logger.error(
                "Store file %s is unreadable (%s). Moving it to %s and starting fresh.",
                self._path, exc, backup,
            )
            os.replace(self._path, backup)
            return StoreSchema()

    def _save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".json.tmp")
        tmp.write_text(self._data.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, self._path)

    def _seed_services(self) -> None:
        with self._lock:
            missing = [n for n in self._defaults.services if n not in self._data.services]
            for name in missing:
                self._data.services[name] = self._config_from_defaults(name)
            if missing or (self._path is not None and not self._path.exists()):
                self._save()

    def _config_from_defaults(self, name: str) -> SyncServiceConfig:
        d = self._defaults.service(name)
        return SyncServiceConfig(
            enabled=d.enabled,
            interval_minutes=d.interval_minutes,
            source_options=dict(d.options),
        )

    # ------------------------------------------------------------------
    # Generic access
    # ------------------------------------------------------------------

    def get(self, key: str) -> Any:
        """Return a deep copy of a top-level store field."""
        with self._lock:
            if key not in StoreSchema.model_fields:
                raise KeyError(f"Unknown store key '{key}'")
            return getattr(self._data.model_copy(deep=True), key)

    def set(self, key: str, value: Any) -> None:
        """Validate and persist a top-level store field.

        Raises:
            KeyError: If ``key`` is not part of the schema.
            pydantic.ValidationError: If ``value`` does not fit the schema.
        """
        with self._lock:
            if key not in StoreSchema.model_fields:
                raise KeyError(f"Unknown store key '{key}'")
            payload = self._data.model_dump(mode="json")
            payload[key] = value
            self._data = StoreSchema.model_validate(payload)
            self._save()

    @property
    def device_id(self) -> str:
        return self._data.device_id

    # ------------------------------------------------------------------
    # Service config
    # ------------------------------------------------------------------

    def get_service_config(self, name: str) -> SyncServiceConfig:
        with self._lock:
            config = self._data.services.get(name)
            if config is None:
                config = self._config_from_defaults(name)
                self._data.services[name] = config
                self._save()
            return config.model_copy(deep=True)

    def set_service_config(self, name: str, config: SyncServiceConfig) -> None:
        with self._lock:
            self._data.services[name] = config.model_copy(deep=True)
            self._save()

    def update_service_config(
        self, name: str, update: SyncServiceConfigUpdate
    ) -> SyncServiceConfig:
        """Merge a partial update into a service's config.

        ``source_options`` keys are merged, not replaced wholesale.
        """
        with self._lock:
            current = self.get_service_config(name)
            changes = update.model_dump(exclude_unset=True, exclude_none=True)
            options = changes.pop("source_options", None)
            merged = current.model_copy(update=changes)
            if options is not None:
                merged.source_options = {**current.source_options, **options}
            # Re-validate so bounds on interval_minutes still apply
            merged = SyncServiceConfig.model_validate(merged.model_dump())
            self.set_service_config(name, merged)
            logger.info("Updated %s config: %s", name, changes or options)
            return merged

    def set_next_sync_after(self, name: str, when: datetime | None) -> None:
        with self._lock:
            config = self.get_service_config(name)
            config.next_sync_after = when
            self.set_service_config(name, config)

    # ------------------------------------------------------------------
    # Watermarks
    # ------------------------------------------------------------------

    def get_watermark(self, name: str) -> Cursor | None:
        with self._lock:
            return Cursor.from_json(self._data.watermarks.get(name))

    def set_watermark(self, name: str, cursor: Cursor) -> None:
        with self._lock:
            self._data.watermarks[name] = cursor.to_json()
            self._save()
        logger.debug("Watermark for %s advanced to %s", name, cursor.timestamp.isoformat())

    def clear_watermark(self, name: str) -> None:
        with self._lock:
            if self._data.watermarks.pop(name, None) is not None:
                self._save()

    # ------------------------------------------------------------------
    # Rolling logs
    # ------------------------------------------------------------------

    def add_sync_log(self, entry: SyncLogEntry) -> str:
        """Prepend a sync log entry, evicting the oldest beyond the cap.  Returns its id."""
        with self._lock:
            logs = [entry, *self._data.sync_logs]
            self._data.sync_logs = logs[: self._defaults.logs.max_sync_logs]
            self._save()
        return entry.id

    def get_sync_logs(self, source: str | None = None) -> list[SyncLogEntry]:
        with self._lock:
            logs = [log.model_copy() for log in self._data.sync_logs]
        if source is not None:
            logs = [log for log in logs if log.source == source]
        return logs

    def clear_sync_logs(self) -> None:
        with self._lock:
            self._data.sync_logs = []
            self._save()

    def add_request_log(self, entry: RequestLogEntry) -> None:
        with self._lock:
            logs = [entry, *self._data.request_logs]
            self._data.request_logs = logs[: self._defaults.logs.max_request_logs]
            self._save()

    def get_request_logs(self) -> list[RequestLogEntry]:
        with self._lock:
            return [log.model_copy() for log in self._data.request_logs]

    def clear_request_logs(self) -> None:
        with self._lock:
            self._data.request_logs = []
            self._save()
