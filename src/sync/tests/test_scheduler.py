"""Tests for SyncScheduler: lifecycle, ticks, watermarks and run-now coalescing."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from src.models.sync import SyncOutcomeKind, SyncServiceConfigUpdate
from src.services.store import ConfigStore
from src.sync.base import Cursor, SyncOutcome, SyncSource
from src.sync.scheduler import SyncRunStatus, SyncScheduler
from src.sync.tests.conftest import NOW


class FakeSource(SyncSource):
    """SyncSource whose tick result is set by the test."""

    def __init__(self, name: str = "whatsapp") -> None:
        self.name = name
        self.outcome = SyncOutcome(item_count=3, watermark=Cursor(NOW, last_id=3))
        self.error: Exception | None = None
        self.start_error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.start_gate: asyncio.Event | None = None
        self.started = 0
        self.stopped = 0
        self.watermarks: list[Cursor | None] = []

    async def on_start(self) -> None:
        self.started += 1
        if self.start_gate is not None:
            await self.start_gate.wait()
        if self.start_error is not None:
            raise self.start_error

    async def on_stop(self) -> None:
        self.stopped += 1

    async def on_sync(self, watermark: Cursor | None) -> SyncOutcome:
        self.watermarks.append(watermark)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.outcome


class ManualSleep:
    """Stand-in for asyncio.sleep that only returns when released."""

    def __init__(self) -> None:
        self.delays: list[float] = []
        self._event = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await self._event.wait()
        self._event.clear()

    def release(self) -> None:
        self._event.set()


async def settle() -> None:
    """Let pending tasks run to their next await."""
    for _ in range(20):
        await asyncio.sleep(0)


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def sleeper() -> ManualSleep:
    return ManualSleep()


@pytest.fixture
def scheduler(source: FakeSource, store: ConfigStore, sleeper: ManualSleep) -> SyncScheduler:
    store.update_service_config("whatsapp", SyncServiceConfigUpdate(enabled=True, interval_minutes=5))
    return SyncScheduler(source, store, now=lambda: NOW, sleep=sleeper)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_runs_one_sync_and_arms_timer(
        self, scheduler: SyncScheduler, source: FakeSource, store: ConfigStore
    ) -> None:
        await scheduler.start()

        assert source.started == 1
        assert len(source.watermarks) == 1
        assert scheduler.is_running()
        assert scheduler.get_next_run_time() == NOW + timedelta(minutes=5)
        assert scheduler.get_time_until_next_run() == timedelta(minutes=5)
        assert store.get_service_config("whatsapp").next_sync_after == NOW + timedelta(minutes=5)

        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_disabled_service_does_nothing(
        self, scheduler: SyncScheduler, source: FakeSource, store: ConfigStore
    ) -> None:
        store.update_service_config("whatsapp", SyncServiceConfigUpdate(enabled=False))
        await scheduler.start()

        assert source.started == 0
        assert source.watermarks == []
        assert not scheduler.is_running()
        assert scheduler.get_next_run_time() is None
        assert scheduler.get_time_until_next_run() == timedelta(0)

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, scheduler: SyncScheduler, source: FakeSource) -> None:
        await scheduler.start()
        await scheduler.start()
        assert source.started == 1
        assert len(source.watermarks) == 1
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_clears_timer_and_calls_hook(
        self, scheduler: SyncScheduler, source: FakeSource, store: ConfigStore
    ) -> None:
        await scheduler.start()
        await scheduler.stop()

        assert not scheduler.is_running()
        assert scheduler.get_next_run_time() is None
        assert store.get_service_config("whatsapp").next_sync_after is None
        assert source.stopped == 1

    @pytest.mark.asyncio
    async def test_on_start_failure_keeps_service_stopped(
        self, scheduler: SyncScheduler, source: FakeSource, store: ConfigStore
    ) -> None:
        source.start_error = PermissionError("Full Disk Access required")
        await scheduler.start()

        assert not scheduler.is_running()
        assert source.watermarks == []
        [entry] = store.get_sync_logs("whatsapp")
        assert entry.outcome == SyncOutcomeKind.ERROR
        assert "Full Disk Access required" in entry.error
        assert scheduler.get_status().status == SyncRunStatus.ERROR

    @pytest.mark.asyncio
    async def test_stop_during_on_start_skips_initial_sync(
        self, scheduler: SyncScheduler, source: FakeSource, store: ConfigStore
    ) -> None:
        source.start_gate = asyncio.Event()
        starting = asyncio.create_task(scheduler.start())
        await settle()

        await scheduler.stop()
        source.start_gate.set()
        await starting

        assert source.watermarks == []
        assert store.get_watermark("whatsapp") is None
        assert store.get_sync_logs("whatsapp") == []
        assert not scheduler.is_running()
        # Once from stop(), once to release what the late on_start opened
        assert source.stopped == 2

    @pytest.mark.asyncio
    async def test_apply_config_restarts(
        self, scheduler: SyncScheduler, source: FakeSource, store: ConfigStore
    ) -> None:
        await scheduler.start()
        config = await scheduler.apply_config(SyncServiceConfigUpdate(interval_minutes=15))

        assert config.interval_minutes == 15
        assert source.started == 2
        assert scheduler.get_next_run_time() == NOW + timedelta(minutes=15)

        await scheduler.apply_config(SyncServiceConfigUpdate(enabled=False))
        assert not scheduler.is_running()
        assert source.stopped == 2


# ---------------------------------------------------------------------------
# Ticks
# ---------------------------------------------------------------------------


class TestTicks:
    @pytest.mark.asyncio
    async def test_success_persists_watermark_and_logs(
        self, scheduler: SyncScheduler, store: ConfigStore
    ) -> None:
        await scheduler.start()

        assert store.get_watermark("whatsapp") == Cursor(NOW, last_id=3)
        [entry] = store.get_sync_logs("whatsapp")
        assert entry.outcome == SyncOutcomeKind.SUCCESS
        assert entry.item_count == 3
        assert entry.trigger == "startup"
        assert scheduler.get_status().last_sync_log_id == entry.id

        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_failure_leaves_watermark_and_keeps_timer(
        self, scheduler: SyncScheduler, source: FakeSource, store: ConfigStore
    ) -> None:
        previous = Cursor(NOW - timedelta(hours=1), last_id=1)
        store.set_watermark("whatsapp", previous)
        source.error = RuntimeError("500 Internal Server Error")

        await scheduler.start()

        assert store.get_watermark("whatsapp") == previous
        [entry] = store.get_sync_logs("whatsapp")
        assert entry.outcome == SyncOutcomeKind.ERROR
        assert entry.error == "500 Internal Server Error"
        assert scheduler.is_running()
        status = scheduler.get_status()
        assert status.status == SyncRunStatus.ERROR
        assert status.last_error == "500 Internal Server Error"

        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_watermark_passed_to_next_tick(
        self, scheduler: SyncScheduler, source: FakeSource
    ) -> None:
        await scheduler.start()
        await scheduler.run_now()
        assert source.watermarks == [None, Cursor(NOW, last_id=3)]
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_disabled_mid_sync_does_not_advance_watermark(
        self, scheduler: SyncScheduler, source: FakeSource, store: ConfigStore
    ) -> None:
        source.gate = asyncio.Event()
        task = asyncio.create_task(scheduler.run_now())
        await settle()

        store.update_service_config("whatsapp", SyncServiceConfigUpdate(enabled=False))
        source.gate.set()
        entry = await task

        assert entry.outcome == SyncOutcomeKind.SUCCESS
        assert store.get_watermark("whatsapp") is None

    @pytest.mark.asyncio
    async def test_timer_fires_scheduled_tick_and_rearms(
        self, scheduler: SyncScheduler, source: FakeSource, store: ConfigStore, sleeper: ManualSleep
    ) -> None:
        await scheduler.start()
        await settle()
        assert sleeper.delays == [300.0]

        sleeper.release()
        await settle()

        assert len(source.watermarks) == 2
        logs = store.get_sync_logs("whatsapp")
        assert [log.trigger for log in logs] == ["scheduled", "startup"]
        assert sleeper.delays == [300.0, 300.0]
        assert scheduler.is_running()

        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_watermark_write_failure_is_logged_and_timer_survives(
        self,
        scheduler: SyncScheduler,
        source: FakeSource,
        store: ConfigStore,
        sleeper: ManualSleep,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        await scheduler.start()
        await settle()
        monkeypatch.setattr(store, "set_watermark", MagicMock(side_effect=OSError("disk full")))

        sleeper.release()
        await settle()

        latest = store.get_sync_logs("whatsapp")[0]
        assert latest.trigger == "scheduled"
        assert latest.outcome == SyncOutcomeKind.ERROR
        assert latest.error == "disk full"
        assert scheduler.is_running()
        assert scheduler.get_status().status == SyncRunStatus.ERROR

        monkeypatch.undo()
        sleeper.release()
        await settle()

        assert len(source.watermarks) == 3
        assert scheduler.get_status().status == SyncRunStatus.SUCCESS
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_crashed_scheduled_tick_keeps_timer(
        self,
        scheduler: SyncScheduler,
        source: FakeSource,
        store: ConfigStore,
        sleeper: ManualSleep,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        await scheduler.start()
        await settle()
        monkeypatch.setattr(store, "add_sync_log", MagicMock(side_effect=RuntimeError("schema drift")))

        sleeper.release()
        await settle()

        assert len(source.watermarks) == 2
        assert scheduler.is_running()
        assert sleeper.delays == [300.0, 300.0]
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_sync_log_is_capped(self, scheduler: SyncScheduler, store: ConfigStore) -> None:
        for _ in range(105):
            await scheduler.run_now()
        logs = store.get_sync_logs()
        assert len(logs) == 100
        assert logs[0].timestamp >= logs[-1].timestamp


# ---------------------------------------------------------------------------
# Run-now
# ---------------------------------------------------------------------------


class TestRunNow:
    @pytest.mark.asyncio
    async def test_run_now_does_not_touch_schedule(
        self, scheduler: SyncScheduler
    ) -> None:
        await scheduler.start()
        next_run = scheduler.get_next_run_time()

        entry = await scheduler.run_now()

        assert entry is not None
        assert entry.trigger == "manual"
        assert scheduler.get_next_run_time() == next_run
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_run_now_during_tick_is_coalesced(
        self, scheduler: SyncScheduler, source: FakeSource, store: ConfigStore
    ) -> None:
        source.gate = asyncio.Event()
        first = asyncio.create_task(scheduler.run_now())
        await settle()
        assert scheduler.is_syncing()

        second = asyncio.create_task(scheduler.run_now())
        await settle()
        source.gate.set()
        a, b = await asyncio.gather(first, second)

        assert a.id == b.id
        assert len(source.watermarks) == 1
        assert len(store.get_sync_logs("whatsapp")) == 1

    @pytest.mark.asyncio
    async def test_run_now_disabled_returns_none(
        self, scheduler: SyncScheduler, source: FakeSource, store: ConfigStore
    ) -> None:
        store.update_service_config("whatsapp", SyncServiceConfigUpdate(enabled=False))
        assert await scheduler.run_now() is None
        assert source.watermarks == []

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_tick(
        self, scheduler: SyncScheduler, source: FakeSource, store: ConfigStore
    ) -> None:
        await scheduler.start()
        source.gate = asyncio.Event()
        tick = asyncio.create_task(scheduler.run_now())
        await settle()

        stopping = asyncio.create_task(scheduler.stop())
        await settle()
        assert not stopping.done()

        source.gate.set()
        await stopping
        entry = await tick
        assert entry.outcome == SyncOutcomeKind.SUCCESS
        assert len(store.get_sync_logs("whatsapp")) == 2
