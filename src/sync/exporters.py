"""Sync sources: the ``on_sync`` tick implementations handed to SyncScheduler.

Each tick follows the same pipeline:

    fetch since watermark → filter → encrypt (if configured) → upload batch
    → repeat until the source is exhausted → report the new watermark

The scheduler persists the watermark only after ``on_sync`` returns, so a
failure anywhere in the tick leaves it where it was and the next tick retries
from the same point.  Batches already uploaded in a failed tick are sent
again next time; the server de-duplicates on record id.

Scans yield to the event loop after every fetched page and every uploaded
batch so a large export never starves timers or progress polling.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from src.sync.base import Cursor, LocalDataSource, SyncOutcome, SyncSource, utc_now
from src.sync.upload import BatchUploader, FileUploader, PageUploader

logger = logging.getLogger("contexter.sync.exporters")

ItemFilter = Callable[[list[dict[str, Any]]], list[dict[str, Any]]]


class IgnoredChatFilter:
    """Drop records whose chat the user chose to ignore.

    Reads ``source_options.ignored_chat_ids`` from the store on every batch so
    changes in the settings window apply to the next batch.
    """

    def __init__(self, store: Any, service_name: str, key: str = "chatId") -> None:
        self._store = store
        self._service_name = service_name
        self._key = key

    def __call__(self, records: list[dict[str, Any]]) -> list[dict[str, Any]]:
        options = self._store.get_service_config(self._service_name).source_options
        ignored = set(options.get("ignored_chat_ids") or [])
        if not ignored:
            return records
        return [r for r in records if r.get(self._key) not in ignored]


class _PagedExportSource(SyncSource):
    """Shared open/close and pagination for the concrete exporters."""

    def __init__(
        self,
        name: str,
        source: LocalDataSource,
        uploader: PageUploader,
        batch_size: int = 50,
        initial_lookback: timedelta = timedelta(hours=24),
        item_filter: ItemFilter | None = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.name = name
        self._source = source
        self._uploader = uploader
        self._batch_size = batch_size
        self._initial_lookback = initial_lookback
        self._item_filter = item_filter
        self._now = now

    async def on_start(self) -> None:
        await self._source.open()

    async def on_stop(self) -> None:
        await self._source.close()

    def _initial_cursor(self, watermark: Cursor | None) -> Cursor:
        if watermark is not None:
            return watermark
        return Cursor(timestamp=self._now() - self._initial_lookback)

    async def on_sync(self, watermark: Cursor | None) -> SyncOutcome:
        logger.info("[%s] Exporting...", self.name)
        # run_now() may fire while the service is stopped; open() is idempotent
        await self._source.open()

        cursor = self._initial_cursor(watermark)
        uploaded = 0
        latest: Cursor | None = None

        while True:
            page = await self._source.fetch_since(cursor, self._batch_size)
            await asyncio.sleep(0)

            items = self._item_filter(page.items) if self._item_filter else page.items
            if items:
                uploaded += await self._uploader.upload_page(items)
                await asyncio.sleep(0)

            if page.last_cursor is not None:
                latest = page.last_cursor
            if page.next_cursor is None:
                break
            cursor = page.next_cursor

        if latest is None:
            logger.info("[%s] No new items to export", self.name)
        else:
            logger.info("[%s] Exported %d items", self.name, uploaded)
        return SyncOutcome(item_count=uploaded, watermark=latest)


class RecordExportSource(_PagedExportSource):
    """Export structured records (messages, contacts) as JSON batches.

    Usage::

        exporter = RecordExportSource(
            "whatsapp",
            source=whatsapp_db,
            uploader=BatchUploader(transport, encryption,
                                   UploadTarget("/api/whatsapp-messages",
                                                encrypted_fields=("text", "senderName")),
                                   device_id=store.device_id),
        )
        scheduler = SyncScheduler(exporter, store)
    """

    def __init__(self, name: str, source: LocalDataSource, uploader: BatchUploader, **kwargs: Any) -> None:
        super().__init__(name, source, uploader, **kwargs)


class FileExportSource(_PagedExportSource):
    """Export binary files (screenshots, attachments) one multipart request each."""

    def __init__(self, name: str, source: LocalDataSource, uploader: FileUploader, **kwargs: Any) -> None:
        super().__init__(name, source, uploader, **kwargs)
