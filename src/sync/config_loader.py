"""Load, validate, and hot-reload the Contexter sync defaults.

The defaults live in ``sync_defaults.yaml`` alongside this module.  At startup
they are loaded once and cached.  Call ``reload_sync_defaults()`` to re-read
from disk.

Usage::

    from src.sync.config_loader import get_sync_defaults

    defaults = get_sync_defaults()
    defaults.service("contacts").interval_minutes   # 60
    defaults.backfill.batch_size                    # 50
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("contexter.sync.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_defaults.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class ServiceDefaults:
    """Default enable/interval/options for one named service."""

    enabled: bool
    interval_minutes: int
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class SyncTickConfig:
    """Recurring sync settings."""

    upload_batch_size: int
    initial_lookback_hours: int


@dataclass
class BackfillConfig:
    """Historical backfill settings."""

    batch_size: int
    default_window_days: int
    progress_log_every_batches: int


@dataclass
class LogLimits:
    """Caps for the rolling sync and request logs."""

    max_sync_logs: int
    max_request_logs: int


@dataclass
class SyncDefaults:
    """Complete, validated sync defaults.

    Attributes:
        version:  Config schema version string.
        services: Service name → defaults.
        sync:     Recurring tick settings.
        backfill: Backfill settings.
        logs:     Rolling log caps.
    """

    version: str
    services: dict[str, ServiceDefaults]
    sync: SyncTickConfig
    backfill: BackfillConfig
    logs: LogLimits
    _raw: dict = field(default_factory=dict, repr=False)

    def service(self, name: str) -> ServiceDefaults:
        """Return defaults for a service, falling back to disabled / hourly.

        Args:
            name: Service name (e.g. 'imessage').

        Returns:
            ServiceDefaults for that service.
        """
        return self.services.get(name) or ServiceDefaults(enabled=False, interval_minutes=60)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_defaults.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync defaults not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> SyncDefaults:
    """Validate the raw YAML dict and construct SyncDefaults.

    Collects every problem before raising so one edit fixes them all.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    def _positive_int(section: dict, key: str, default: int, where: str) -> int:
        value = section.get(key, default)
        try:
            number = int(value)
        except (TypeError, ValueError):
            errors.append(f"{where}.{key} must be an integer, got {value!r}")
            return default
        if number < 1:
            errors.append(f"{where}.{key} = {number} must be >= 1")
        return number

    version = str(raw.get("version", "1.0"))

    # ── Services ──
    services_raw = raw.get("services", {})
    if not services_raw:
        errors.append("'services' section is missing or empty")

    services: dict[str, ServiceDefaults] = {}
    for name, cfg in (services_raw or {}).items():
        if not isinstance(cfg, dict):
            errors.append(f"services.{name} must be a mapping")
            continue
        options = cfg.get("options") or {}
        if not isinstance(options, dict):
            errors.append(f"services.{name}.options must be a mapping")
            options = {}
        services[name] = ServiceDefaults(
            enabled=bool(cfg.get("enabled", False)),
            interval_minutes=_positive_int(cfg, "interval_minutes", 60, f"services.{name}"),
            options=options,
        )

    # ── Sync tick ──
    sync_raw = raw.get("sync", {}) or {}
    sync = SyncTickConfig(
        upload_batch_size=_positive_int(sync_raw, "upload_batch_size", 50, "sync"),
        initial_lookback_hours=_positive_int(sync_raw, "initial_lookback_hours", 24, "sync"),
    )

    # ── Backfill ──
    bf_raw = raw.get("backfill", {}) or {}
    backfill = BackfillConfig(
        batch_size=_positive_int(bf_raw, "batch_size", 50, "backfill"),
        default_window_days=_positive_int(bf_raw, "default_window_days", 120, "backfill"),
        progress_log_every_batches=_positive_int(
            bf_raw, "progress_log_every_batches", 10, "backfill"
        ),
    )

    # ── Logs ──
    logs_raw = raw.get("logs", {}) or {}
    logs = LogLimits(
        max_sync_logs=_positive_int(logs_raw, "max_sync_logs", 100, "logs"),
        max_request_logs=_positive_int(logs_raw, "max_request_logs", 100, "logs"),
    )

    if errors:
        raise ConfigValidationError(
            f"sync_defaults.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncDefaults(
        version=version,
        services=services,
        sync=sync,
        backfill=backfill,
        logs=logs,
        _raw=raw,
    )


def load_sync_defaults(path: Path | None = None) -> SyncDefaults:
    """Load and validate the sync defaults from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_defaults.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync defaults v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncDefaults | None = None
_config_lock = threading.Lock()


def get_sync_defaults() -> SyncDefaults:
    """Return the global SyncDefaults singleton, loading it on first call."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_defaults()
    return _config


def reload_sync_defaults(path: Path | None = None) -> SyncDefaults:
    """Reload the defaults from disk and replace the global singleton.

    If validation fails, the old defaults are retained and the error is
    re-raised.

    Raises:
        ConfigValidationError: If the new file is invalid.
        FileNotFoundError:     If the file is missing.
    """
    global _config
    new_config = load_sync_defaults(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync defaults: %s → %s", old_version, new_config.version)
    return new_config
