"""Historical backfill engine for one local data source.

Imports everything from the last ``window_days`` (default 120) in fixed-size
batches, independently of the recurring scheduler.  Designed to:

- Page through the source with the resumable ``(timestamp, id)`` cursor, so
  consecutive batches never overlap
- Encrypt each batch (per-field + blind indexes) when a passphrase is set
- Stop cleanly between batches when cancelled, keeping partial counts
- Abort on the first failed batch upload, recording which batch failed and
  how many items made it (no automatic retry)

State machine::

    Idle → Running(loading) → Running(uploading) → Completed | Error | Cancelled

Usage::

    engine = BackfillEngine("whatsapp", open_whatsapp_db, uploader)
    task = asyncio.create_task(engine.run(window_days=30))
    engine.get_progress()   # poll from the UI
    engine.cancel()
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from src.sync.base import Cursor, LocalDataSource, utc_now
from src.sync.errors import PartialFailure
from src.sync.exporters import ItemFilter
from src.sync.upload import PageUploader

logger = logging.getLogger("contexter.sync.backfill")

DEFAULT_WINDOW_DAYS = 120


class BackfillStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


class BackfillPhase(str, Enum):
    LOADING = "loading"
    UPLOADING = "uploading"


@dataclass(frozen=True)
class BackfillState:
    """Snapshot of a backfill run.  Held in memory only.

    Attributes:
        status:         Overall run status.
        phase:          Sub-phase while running, else None.
        cursor:         Resume position after the last fetched batch.
        current:        Batches fetched so far.
        total:          Expected batches (``ceil(count / batch_size)``; 0 if
                        the source could not count).
        message_count:  Pre-counted items in the window (0 if uncountable).
        items_uploaded: Items confirmed by the server.
        failed_batch:   1-based number of the upload batch that failed, if any.
        error:          Human-readable error, if the run failed.
    """

    status: BackfillStatus = BackfillStatus.IDLE
    phase: BackfillPhase | None = None
    cursor: Cursor | None = None
    current: int = 0
    total: int = 0
    message_count: int = 0
    items_uploaded: int = 0
    failed_batch: int | None = None
    error: str | None = None

    @property
    def pct_complete(self) -> float:
        if self.total == 0:
            return 100.0 if self.status is BackfillStatus.COMPLETED else 0.0
        return round(min(self.current, self.total) / self.total * 100, 1)


class BackfillEngine:
    """Resumable, cancellable bulk import for one named source.

    One run at a time per engine; a second ``run()`` while one is active is a
    logged no-op that returns the current snapshot.
    """

    def __init__(
        self,
        name: str,
        source_factory: Callable[[], LocalDataSource],
        uploader: PageUploader,
        item_filter: ItemFilter | None = None,
        batch_size: int = 50,
        progress_log_every: int = 10,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the engine.

        Args:
            name:               Service name, used in logs.
            source_factory:     Returns a fresh, unopened source for each run so
                                a run never shares a handle with the scheduler.
            uploader:           Seals and uploads each batch.
            item_filter:        Optional filter applied to every fetched batch.
            batch_size:         Items per fetch / upload.
            progress_log_every: Log progress every N uploaded batches.
            now:                Clock returning an aware UTC datetime.
        """
        self.name = name
        self._source_factory = source_factory
        self._uploader = uploader
        self._item_filter = item_filter
        self._batch_size = batch_size
        self._progress_log_every = max(1, progress_log_every)
        self._now = now

        self._state = BackfillState()
        self._cancelled = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_progress(self) -> BackfillState:
        return self._state

    def is_running(self) -> bool:
        return self._state.status is BackfillStatus.RUNNING

    def cancel(self) -> None:
        """Request cancellation; observed before the next batch is fetched."""
        if not self.is_running():
            return
        logger.info("[%s] Backfill cancellation requested", self.name)
        self._cancelled = True

    async def run(self, window_days: int = DEFAULT_WINDOW_DAYS) -> BackfillState:
        """Import the last ``window_days`` of data.

        Never raises for source or upload failures; they end the run in
        ``Error`` and are reported through the returned snapshot.

        Returns:
            The final BackfillState.
        """
        if self.is_running():
            logger.info("[%s] Backfill already in progress", self.name)
            return self._state

        self._cancelled = False
        self._state = BackfillState(status=BackfillStatus.RUNNING, phase=BackfillPhase.LOADING)
        logger.info("[%s] Starting backfill (%d days)", self.name, window_days)

        source = self._source_factory()
        opened = False
        try:
            try:
                await source.open()
            except Exception as exc:
                logger.error("[%s] Could not open source: %s", self.name, exc)
                self._finish(BackfillStatus.ERROR, error=f"Failed to open source: {exc}")
                return self._state
            opened = True
            await self._run(source, window_days)
        except PartialFailure as exc:
            logger.error("[%s] %s", self.name, exc)
            self._finish(
                BackfillStatus.ERROR,
                failed_batch=exc.failed_batch,
                items_uploaded=exc.items_uploaded,
                error=str(exc),
            )
        except asyncio.CancelledError:
            logger.info("[%s] Backfill task cancelled", self.name)
            self._finish(BackfillStatus.CANCELLED)
            raise
        except Exception as exc:
            logger.exception("[%s] Backfill failed", self.name)
            self._finish(BackfillStatus.ERROR, error=str(exc) or exc.__class__.__name__)
        finally:
            if opened:
                try:
                    await source.close()
                except Exception as exc:
                    logger.warning("[%s] Could not close source: %s", self.name, exc)

        return self._state

        try:
            await self._run(window_days)
        except PartialFailure as exc:
            logger.error("[%s] %s", self.name, exc)
            self._finish(
                BackfillStatus.ERROR,
                failed_batch=exc.failed_batch,
                items_uploaded=exc.items_uploaded,
                error=str(exc),
            )
        except Exception as exc:
            logger.exception("[%s] Backfill failed", self.name)
            self._finish(BackfillStatus.ERROR, error=str(exc) or exc.__class__.__name__)
        finally:
            try:
                await self._source.close()
            except Exception as exc:
                logger.warning("[%s] Could not close source: %s", self.name, exc)

        return self._state

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _update(self, **changes) -> None:
        self._state = replace(self._state, **changes)

    def _finish(self, status: BackfillStatus, **changes) -> None:
        self._update(status=status, phase=None, **changes)

    async def _run(self, source: LocalDataSource, window_days: int) -> None:
        since = self._now() - timedelta(days=window_days)
        count = await source.count_since(since)

        if count == 0:
            logger.info("[%s] Nothing to backfill", self.name)
            self._finish(BackfillStatus.COMPLETED)
            return

        total = math.ceil(count / self._batch_size) if count else 0
        self._update(
            phase=BackfillPhase.UPLOADING,
            total=total,
            message_count=count or 0,
        )
        logger.info(
            "[%s] Backfilling %s items in %s batches",
            self.name,
            count if count is not None else "an unknown number of",
            total or "?",
        )

        cursor = Cursor(timestamp=since)
        batch_number = 0
        upload_number = 0
        uploaded = 0
        exhausted = False

        while not self._cancelled:
            page = await source.fetch_since(cursor, self._batch_size)
            await asyncio.sleep(0)
            if not page.items and page.next_cursor is None:
                exhausted = True
                break

            batch_number += 1
            items = self._item_filter(page.items) if self._item_filter else page.items
            if items:
                # Fully filtered pages are never sent, so they are not numbered
                upload_number += 1
                try:
                    uploaded += await self._uploader.upload_page(items)
                except Exception as exc:
                    raise PartialFailure(
                        f"Failed to upload batch {upload_number}. "
                        f"{uploaded} items uploaded in total. Error: {exc}",
                        failed_batch=upload_number,
                        items_uploaded=uploaded,
                    ) from exc
                await asyncio.sleep(0)

            self._update(
                cursor=page.next_cursor or page.last_cursor or cursor,
                current=batch_number,
                items_uploaded=uploaded,
            )
            if batch_number % self._progress_log_every == 0:
                logger.info(
                    "[%s] Backfill progress: batch %d/%s, %d items uploaded",
                    self.name, batch_number, total or "?", uploaded,
                )

            if page.next_cursor is None:
                exhausted = True
                break
            cursor = page.next_cursor

        if exhausted:
            logger.info("[%s] Backfill complete: %d items uploaded", self.name, uploaded)
            self._finish(BackfillStatus.COMPLETED)
        else:
            logger.info(
                "[%s] Backfill cancelled after %d batches (%d items)",
                self.name, batch_number, uploaded,
            )
            self._finish(BackfillStatus.CANCELLED)
