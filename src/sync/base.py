"""Base classes and shared data types for the Contexter sync engine.

Two seams plug platform code into the generic engine:

- ``LocalDataSource`` — paginated, cursor-based read of local data (a chat
  database, a contacts export, a screenshots folder).  The same contract
  serves recurring sync (cursor = stored watermark) and backfill
  (cursor = last seen (timestamp, id)).
- ``SyncSource`` — the lifecycle capability a named service hands to the
  generic ``SyncScheduler``: ``on_start`` / ``on_stop`` hooks and the
  ``on_sync`` tick callback.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger("contexter.sync")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # Naive datetimes are assumed to be UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Cursor / pages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Cursor:
    """Resumable position in a local data source.

    Items are ordered by ``(timestamp, last_id)``; a fetch returns items
    strictly after the cursor.  ``last_id=None`` means "everything after
    ``timestamp``".

    Attributes:
        timestamp: Timestamp of the last item seen (UTC).
        last_id:   Source-specific id of the last item seen, tie-breaker for
                   items sharing a timestamp.
    """

    timestamp: datetime
    last_id: str | int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", _as_utc(self.timestamp))

    def to_json(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "last_id": self.last_id}

    @classmethod
    def from_json(cls, data: dict[str, Any] | None) -> "Cursor | None":
        if not data or not data.get("timestamp"):
            return None
        try:
            ts = datetime.fromisoformat(str(data["timestamp"]).replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Discarding unparseable cursor: %r", data)
            return None
        return cls(timestamp=ts, last_id=data.get("last_id"))

    def is_after(self, timestamp: datetime, item_id: str | int | None) -> bool:
        """Return True if an item at (timestamp, item_id) lies strictly after this cursor."""
        ts = _as_utc(timestamp)
        if ts != self.timestamp:
            return ts > self.timestamp
        if self.last_id is None:
            return False
        if isinstance(item_id, int) and isinstance(self.last_id, int):
            return item_id > self.last_id
        return str(item_id) > str(self.last_id)


@dataclass(frozen=True)
class FetchResult:
    """One page returned by ``LocalDataSource.fetch_since``.

    Attributes:
        items:       Records in (timestamp, id) order, already mapped to the
                     upload schema.
        next_cursor: Where the next fetch should resume, or None when the
                     source is exhausted.
        last_cursor: Position of the final item in ``items`` (None if empty).
                     Used as the watermark once the page is uploaded.
    """

    items: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: Cursor | None = None
    last_cursor: Cursor | None = None


@dataclass(frozen=True)
class SyncOutcome:
    """What a successful ``on_sync`` tick reports back to the scheduler.

    Attributes:
        item_count: Items confirmed uploaded during the tick.
        watermark:  New watermark to persist, or None to leave it unchanged.
    """

    item_count: int = 0
    watermark: Cursor | None = None


# ---------------------------------------------------------------------------
# Abstract collaborators
# ---------------------------------------------------------------------------


class LocalDataSource(ABC):
    """Paginated read access to one kind of local data.

    Implementations own any handle they need (database connection, file
    scanner) between ``open()`` and ``close()``.  ``open``/``close`` must be
    idempotent.
    """

    async def open(self) -> None:
        """Acquire the underlying handle.  Default: nothing to open."""

    async def close(self) -> None:
        """Release the underlying handle.  Default: nothing to close."""

    async def count_since(self, since: datetime) -> int | None:
        """Best-effort count of items newer than ``since``.

        Returns None when the source cannot count cheaply.
        """
        return None

    @abstractmethod
    async def fetch_since(self, cursor: Cursor, limit: int) -> FetchResult:
        """Fetch up to ``limit`` items strictly after ``cursor``.

        Two consecutive calls chained through ``next_cursor`` never return
        overlapping items.

        Args:
            cursor: Resume position.
            limit:  Maximum page size.

        Returns:
            FetchResult with the page and the resume cursor.
        """


class SyncSource(ABC):
    """Capability interface injected into ``SyncScheduler``.

    One instance per named service (``screenshots``, ``imessage``, ...).
    """

    name: str = "unknown"

    async def on_start(self) -> None:
        """Called once when the service starts (e.g. open a persistent handle)."""

    async def on_stop(self) -> None:
        """Called once when the service stops (e.g. close the handle)."""

    @abstractmethod
    async def on_sync(self, watermark: Cursor | None) -> SyncOutcome:
        """Run one sync tick.

        Fetch everything after ``watermark``, encrypt if configured, upload in
        batches.  Must raise on any upload failure so the scheduler keeps the
        previous watermark.

        Args:
            watermark: Last confirmed-uploaded position, or None on first run.

        Returns:
            SyncOutcome with the uploaded count and the new watermark.
        """
