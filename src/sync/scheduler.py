"""Recurring sync scheduler for one named local data source.

Lifecycle::

    Stopped → Starting → Idle (timer armed) → Running (one tick) → Idle
                                   └────────────── stop() ──────→ Stopped

- ``start()``    — no-op when the service is disabled.  Otherwise calls the
                   source's ``on_start`` hook, runs one tick immediately (a
                   failure is logged and never blocks scheduling), then arms
                   a recurring timer at ``interval_minutes``.  A ``stop()``
                   that lands during ``on_start`` skips the initial tick.
- ``stop()``     — cancels the timer, lets an in-flight tick finish, calls
                   ``on_stop``.
- ``restart()``  — ``stop(); start()``; used after a config change.
- ``run_now()``  — out-of-band tick that leaves the timer alone.

At most one tick per source is in flight.  A tick requested while another is
running (timer or ``run_now``) joins the running one and returns its log
entry; nothing is ever queued.

Tick semantics: the stored watermark advances only after ``on_sync`` returns,
i.e. after every batch was confirmed by the server, and only while the
service is still enabled.  A failed tick leaves the watermark alone, appends
an error entry to the rolling sync log and the timer re-arms as usual.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable

from src.models.sync import (
    SyncLogEntry,
    SyncOutcomeKind,
    SyncServiceConfig,
    SyncServiceConfigUpdate,
)
from src.services.store import ConfigStore
from src.sync.base import SyncSource, utc_now

logger = logging.getLogger("contexter.sync.scheduler")


class SyncRunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class _Lifecycle(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    STARTED = "started"


@dataclass(frozen=True)
class ServiceStatus:
    """Immutable snapshot of a scheduler, safe to hand to the UI.

    Attributes:
        name:             Service name.
        enabled:          Persisted ``enabled`` flag.
        interval_minutes: Persisted interval.
        status:           Outcome of the current / last tick.
        is_running:       True while the recurring timer is armed.
        is_syncing:       True while a tick is in flight.
        next_run_time:    Target of the armed timer (UTC), or None.
        last_run_at:      Start time of the last tick (UTC), or None.
        last_error:       Error message of the last tick, if it failed.
        last_sync_log_id: Id of the last SyncLogEntry written.
    """

    name: str
    enabled: bool
    interval_minutes: int
    status: SyncRunStatus
    is_running: bool
    is_syncing: bool
    next_run_time: datetime | None
    last_run_at: datetime | None
    last_error: str | None
    last_sync_log_id: str | None


class SyncScheduler:
    """Generic recurring-sync engine, parameterized by a ``SyncSource``.

    Usage::

        scheduler = SyncScheduler(exporter, store)
        await scheduler.start()
        ...
        await scheduler.run_now()
        await scheduler.stop()
    """

    def __init__(
        self,
        source: SyncSource,
        store: ConfigStore,
        now: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the scheduler.

        Args:
            source: Lifecycle + tick callbacks for one named service.
            store:  Config store holding the service config and watermark.
            now:    Clock returning an aware UTC datetime (injectable for tests).
            sleep:  Coroutine used to wait for the next tick (injectable for tests).
        """
        self._source = source
        self._store = store
        self._now = now
        self._sleep = sleep

        self._lifecycle = _Lifecycle.STOPPED
        self._timer_task: asyncio.Task[None] | None = None
        self._current_tick: asyncio.Task[SyncLogEntry] | None = None
        self._next_run_time: datetime | None = None

        self._status = SyncRunStatus.IDLE
        self._last_run_at: datetime | None = None
        self._last_error: str | None = None
        self._last_sync_log_id: str | None = None

    @property
    def name(self) -> str:
        return self._source.name

    @property
    def config(self) -> SyncServiceConfig:
        return self._store.get_service_config(self.name)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the service if it is enabled and not already running."""
        if self._lifecycle is not _Lifecycle.STOPPED:
            logger.info("[%s] Already running", self.name)
            return

        config = self.config
        if not config.enabled:
            logger.info("[%s] Disabled", self.name)
            return

        logger.info("[%s] Starting (every %d min)...", self.name, config.interval_minutes)
        self._lifecycle = _Lifecycle.STARTING

        try:
            await self._source.on_start()
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.error("[%s] Failed to start: %s", self.name, message)
            self._lifecycle = _Lifecycle.STOPPED
            self._status = SyncRunStatus.ERROR
            self._last_error = message
            self._write_log(
                SyncLogEntry(
                    source=self.name,
                    outcome=SyncOutcomeKind.ERROR,
                    error=f"Failed to start: {message}",
                    trigger="startup",
                )
            )
            return

        if self._lifecycle is not _Lifecycle.STARTING:
            # stop() was called while on_start ran; release what on_start opened
            logger.info("[%s] Stopped during startup", self.name)
            try:
                await self._source.on_stop()
            except Exception as exc:
                logger.warning("[%s] on_stop hook failed: %s", self.name, exc)
            return

        # Initial tick; failures are recorded but never prevent scheduling
        await self._run_tick("startup")

        if self._lifecycle is not _Lifecycle.STARTING:
            # stop() was called while the initial tick ran
            return
        self._lifecycle = _Lifecycle.STARTED
        self._arm(timedelta(minutes=config.interval_minutes))

    async def stop(self) -> None:
        """Cancel the timer, wait for an in-flight tick, call ``on_stop``."""
        was_active = self._lifecycle is not _Lifecycle.STOPPED
        self._lifecycle = _Lifecycle.STOPPED

        if self._timer_task is not None:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

        if self._current_tick is not None and not self._current_tick.done():
            logger.info("[%s] Waiting for in-flight sync to finish", self.name)
            await asyncio.wait({self._current_tick})

        if self._next_run_time is not None:
            self._set_next_run(None)

        if was_active:
            try:
                await self._source.on_stop()
            except Exception as exc:
                logger.warning("[%s] on_stop hook failed: %s", self.name, exc)
            logger.info("[%s] Stopped", self.name)

    async def restart(self) -> None:
        await self.stop()
        await self.start()

    async def apply_config(self, update: SyncServiceConfigUpdate) -> SyncServiceConfig:
        """Persist a config change and restart so it takes effect."""
        config = self._store.update_service_config(self.name, update)
        await self.restart()
        return config

    def is_running(self) -> bool:
        """Return True while the recurring timer is armed."""
        return self._timer_task is not None and not self._timer_task.done()

    def is_syncing(self) -> bool:
        """Return True while a tick is in flight."""
        return self._current_tick is not None and not self._current_tick.done()

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def _set_next_run(self, when: datetime | None) -> None:
        self._next_run_time = when
        try:
            self._store.set_next_sync_after(self.name, when)
        except OSError as exc:
            logger.warning("[%s] Could not persist next sync time: %s", self.name, exc)

    def _arm(self, interval: timedelta) -> None:
        self._set_next_run(self._now() + interval)
        self._timer_task = asyncio.create_task(
            self._timer_loop(interval), name=f"sync-timer:{self.name}"
        )
        logger.debug("[%s] Next sync at %s", self.name, self._next_run_time)

    async def _timer_loop(self, interval: timedelta) -> None:
        while True:
            target = self._next_run_time or (self._now() + interval)
            delay = max(0.0, (target - self._now()).total_seconds())
            await self._sleep(delay)
            try:
                await self._run_tick("scheduled")
            except Exception:
                logger.exception("[%s] Scheduled sync crashed", self.name)
            self._set_next_run(self._now() + interval)

    def get_next_run_time(self) -> datetime | None:
        return self._next_run_time

    def get_time_until_next_run(self) -> timedelta:
        """Time left until the armed timer fires (zero if not armed or overdue)."""
        if self._next_run_time is None:
            return timedelta(0)
        return max(timedelta(0), self._next_run_time - self._now())

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    async def run_now(self) -> SyncLogEntry | None:
        """Run a tick immediately without touching the recurring schedule.

        Returns:
            The tick's SyncLogEntry (the in-flight one if a tick was already
            running), or None if the service is disabled.
        """
        if not self.config.enabled:
            logger.info("[%s] Disabled; ignoring run-now", self.name)
            return None
        return await self._run_tick("manual")

    async def _run_tick(self, trigger: str) -> SyncLogEntry:
        if self._current_tick is not None and not self._current_tick.done():
            logger.info("[%s] Sync already in progress; joining it", self.name)
            return await asyncio.shield(self._current_tick)

        task = asyncio.create_task(self._tick(trigger), name=f"sync-tick:{self.name}")
        self._current_tick = task
        # Shielded so stop() cancelling the timer never aborts an upload mid-flight
        return await asyncio.shield(task)

    async def _tick(self, trigger: str) -> SyncLogEntry:
        started_at = self._now()
        started = time.monotonic()
        self._status = SyncRunStatus.RUNNING
        self._last_run_at = started_at

        try:
            watermark = self._store.get_watermark(self.name)
            outcome = await self._source.on_sync(watermark)
            if outcome.watermark is not None:
                if self.config.enabled:
                    self._store.set_watermark(self.name, outcome.watermark)
                else:
                    logger.info(
                        "[%s] Disabled during sync; watermark left unchanged", self.name
                    )
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.error("[%s] Sync failed: %s", self.name, message)
            self._status = SyncRunStatus.ERROR
            self._last_error = message
            entry = SyncLogEntry(
                source=self.name,
                timestamp=started_at,
                outcome=SyncOutcomeKind.ERROR,
                error=message,
                duration_ms=int((time.monotonic() - started) * 1000),
                trigger=trigger,
            )
        else:
            self._status = SyncRunStatus.SUCCESS
            self._last_error = None
            entry = SyncLogEntry(
                source=self.name,
                timestamp=started_at,
                outcome=SyncOutcomeKind.SUCCESS,
                item_count=outcome.item_count,
                duration_ms=int((time.monotonic() - started) * 1000),
                trigger=trigger,
            )

        self._write_log(entry)
        return entry

    def _write_log(self, entry: SyncLogEntry) -> None:
        try:
            self._last_sync_log_id = self._store.add_sync_log(entry)
        except OSError as exc:
            logger.error("[%s] Could not write sync log: %s", self.name, exc)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> ServiceStatus:
        config = self.config
        return ServiceStatus(
            name=self.name,
            enabled=config.enabled,
            interval_minutes=config.interval_minutes,
            status=self._status,
            is_running=self.is_running(),
            is_syncing=self.is_syncing(),
            next_run_time=self._next_run_time,
            last_run_at=self._last_run_at,
            last_error=self._last_error,
            last_sync_log_id=self._last_sync_log_id,
        )
