"""Per-process registry of sync services.

Owns one ``SyncScheduler`` per named service plus an optional
``BackfillEngine``, and the background tasks of running backfills.  The
control API and the app lifespan talk to services only through here.

``ServiceFactory`` wires the shared collaborators (store, transport,
encryption, defaults) into the exporter → scheduler → backfill chain so
platform readers only have to supply a ``LocalDataSource`` factory.  The
scheduler keeps one source for its lifetime; every backfill run opens its
own::

    factory = ServiceFactory(store, transport, encryption)
    registry.register(*factory.record_service("whatsapp", open_db, WHATSAPP_TARGET))
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from functools import partial
from typing import Callable

from src.config import Settings
from src.services.store import ConfigStore
from src.sources.directory import DirectorySource
from src.sync.backfill import BackfillEngine, BackfillState
from src.sync.base import LocalDataSource
from src.sync.config_loader import SyncDefaults, get_sync_defaults
from src.sync.encryption import EncryptionService
from src.sync.exporters import FileExportSource, IgnoredChatFilter, RecordExportSource
from src.sync.scheduler import SyncScheduler
from src.sync.upload import BatchUploader, FileUploader, PageUploader, Transport, UploadTarget

logger = logging.getLogger("contexter.sync.registry")

# ---------------------------------------------------------------------------
# Upload targets of the known services
# ---------------------------------------------------------------------------

IMESSAGE_TARGET = UploadTarget("/api/messages", encrypted_fields=("text",))
WHATSAPP_TARGET = UploadTarget(
    "/api/whatsapp-messages",
    encrypted_fields=("text", "senderName"),
    index_fields=("senderName",),
)
CONTACTS_TARGET = UploadTarget(
    "/api/contacts", body_key="contacts", count_key="contactCount"
)
SCREENSHOTS_PATH = "/api/screenshots"

SourceFactory = Callable[[], LocalDataSource]


class SyncRegistry:
    """Named schedulers and backfill engines for one process."""

    def __init__(self) -> None:
        self._schedulers: dict[str, SyncScheduler] = {}
        self._backfills: dict[str, BackfillEngine] = {}
        self._tasks: set[asyncio.Task[BackfillState]] = set()

    def register(self, scheduler: SyncScheduler, backfill: BackfillEngine | None = None) -> None:
        name = scheduler.name
        if name in self._schedulers:
            raise ValueError(f"Service '{name}' is already registered")
        self._schedulers[name] = scheduler
        if backfill is not None:
            self._backfills[name] = backfill
        logger.debug("Registered service %s (backfill: %s)", name, backfill is not None)

    def names(self) -> list[str]:
        return sorted(self._schedulers)

    def get_scheduler(self, name: str) -> SyncScheduler:
        try:
            return self._schedulers[name]
        except KeyError:
            raise KeyError(f"Unknown service '{name}'") from None

    def get_backfill(self, name: str) -> BackfillEngine:
        try:
            return self._backfills[name]
        except KeyError:
            raise KeyError(f"Service '{name}' does not support backfill") from None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_all(self) -> None:
        """Start every registered service concurrently (disabled ones no-op)."""
        await asyncio.gather(*(s.start() for s in self._schedulers.values()))

    async def stop_all(self) -> None:
        """Cancel running backfills and stop every service."""
        for engine in self._backfills.values():
            engine.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await asyncio.gather(*(s.stop() for s in self._schedulers.values()))

    async def start_backfill(self, name: str, window_days: int | None = None) -> BackfillState:
        """Launch a backfill in the background and return its first snapshot.

        Raises:
            KeyError: If the service has no backfill engine.
        """
        engine = self.get_backfill(name)
        if engine.is_running():
            logger.info("[%s] Backfill already in progress", name)
            return engine.get_progress()

        args = () if window_days is None else (window_days,)
        task = asyncio.create_task(engine.run(*args), name=f"backfill:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        # Let the run reach its first await so the snapshot shows Running
        await asyncio.sleep(0)
        return engine.get_progress()


class ServiceFactory:
    """Builds scheduler/backfill pairs that share one store, transport and key."""

    def __init__(
        self,
        store: ConfigStore,
        transport: Transport,
        encryption: EncryptionService,
        defaults: SyncDefaults | None = None,
    ) -> None:
        self._store = store
        self._transport = transport
        self._encryption = encryption
        self._defaults = defaults or get_sync_defaults()

    def _export_kwargs(self) -> dict:
        return {
            "batch_size": self._defaults.sync.upload_batch_size,
            "initial_lookback": timedelta(hours=self._defaults.sync.initial_lookback_hours),
        }

    def _backfill(
        self,
        name: str,
        source_factory: SourceFactory,
        uploader: PageUploader,
        item_filter: IgnoredChatFilter | None = None,
    ) -> BackfillEngine:
        return BackfillEngine(
            name,
            source_factory,
            uploader,
            item_filter=item_filter,
            batch_size=self._defaults.backfill.batch_size,
            progress_log_every=self._defaults.backfill.progress_log_every_batches,
        )

    def record_service(
        self,
        name: str,
        source_factory: SourceFactory,
        target: UploadTarget,
        with_backfill: bool = True,
    ) -> tuple[SyncScheduler, BackfillEngine | None]:
        """Recurring JSON-batch sync, plus a backfill engine over the same data."""
        uploader = BatchUploader(self._transport, self._encryption, target, self._store.device_id)
        item_filter = IgnoredChatFilter(self._store, name)
        exporter = RecordExportSource(
            name, source_factory(), uploader, item_filter=item_filter, **self._export_kwargs()
        )
        backfill = None
        if with_backfill:
            backfill = self._backfill(name, source_factory, uploader, item_filter)
        return SyncScheduler(exporter, self._store), backfill

    def file_service(
        self,
        name: str,
        source_factory: SourceFactory,
        path: str,
        with_backfill: bool = True,
    ) -> tuple[SyncScheduler, BackfillEngine | None]:
        """Recurring one-file-per-request sync, plus a backfill engine."""
        uploader = FileUploader(self._transport, self._encryption, path)
        exporter = FileExportSource(name, source_factory(), uploader, **self._export_kwargs())
        backfill = None
        if with_backfill:
            backfill = self._backfill(name, source_factory, uploader)
        return SyncScheduler(exporter, self._store), backfill


def build_registry(
    settings: Settings,
    store: ConfigStore,
    transport: Transport,
    defaults: SyncDefaults | None = None,
) -> SyncRegistry:
    """Register every service this machine can serve.

    Platform readers (iMessage, WhatsApp, Contacts) are registered by the
    platform integration through ``ServiceFactory.record_service``; the
    screenshots folder works everywhere and is registered here when set.
    """
    encryption = EncryptionService(lambda: settings.encryption_key)
    factory = ServiceFactory(store, transport, encryption, defaults)
    registry = SyncRegistry()

    if settings.screenshots_dir is not None:
        registry.register(
            *factory.file_service(
                "screenshots", partial(DirectorySource, settings.screenshots_dir), SCREENSHOTS_PATH
            )
        )
    else:
        logger.info("CONTEXTER_SCREENSHOTS_DIR not set; screenshots service not registered")

    if not encryption.enabled:
        logger.warning("No encryption key configured; uploads will be sent in plaintext")
    return registry
