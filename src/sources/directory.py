"""Folder-backed data source: every matching file in a directory is one item.

Items are ordered by (modification time, filename), which gives the stable
``(timestamp, id)`` order the cursor contract needs.  Each item is shaped for
``FileUploader``::

    {"id": "shot.png", "timestamp": "2026-02-23T10:00:00+00:00",
     "content": b"...", "filename": "shot.png", "mime_type": "image/png"}

Directory scans and file reads run in a worker thread so a large folder never
blocks the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from src.sync.base import Cursor, FetchResult, LocalDataSource

logger = logging.getLogger("contexter.sources.directory")

DEFAULT_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp", ".gif", ".heic")


@dataclass(frozen=True)
class _Entry:
    path: Path
    modified: datetime

    @property
    def cursor(self) -> Cursor:
        return Cursor(timestamp=self.modified, last_id=self.path.name)


class DirectorySource(LocalDataSource):
    """Read files from a single (non-recursive) folder."""

    def __init__(self, root: Path, extensions: Iterable[str] = DEFAULT_EXTENSIONS) -> None:
        self._root = Path(root).expanduser()
        self._extensions = {e.lower() for e in extensions}

    @property
    def root(self) -> Path:
        return self._root

    async def open(self) -> None:
        if not self._root.is_dir():
            raise FileNotFoundError(f"Folder not found: {self._root}")

    def _scan(self) -> list[_Entry]:
        entries = []
        for path in self._root.iterdir():
            if not path.is_file() or path.suffix.lower() not in self._extensions:
                continue
            try:
                stat = path.stat()
            except OSError as exc:
                # File removed between listing and stat
                logger.debug("Skipping %s: %s", path, exc)
                continue
            modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
            entries.append(_Entry(path=path, modified=modified))
        entries.sort(key=lambda e: (e.modified, e.path.name))
        return entries

    async def count_since(self, since: datetime) -> int | None:
        entries = await asyncio.to_thread(self._scan)
        cursor = Cursor(timestamp=since)
        return sum(1 for e in entries if cursor.is_after(e.modified, e.path.name))

    def _read_page(self, cursor: Cursor, limit: int) -> tuple[list[dict[str, Any]], list[_Entry], bool]:
        pending = [e for e in self._scan() if cursor.is_after(e.modified, e.path.name)]
        page = pending[:limit]
        items = []
        for entry in page:
            mime_type, _ = mimetypes.guess_type(entry.path.name)
            items.append(
                {
                    "id": entry.path.name,
                    "timestamp": entry.modified.isoformat(),
                    "content": entry.path.read_bytes(),
                    "filename": entry.path.name,
                    "mime_type": mime_type or "application/octet-stream",
                }
            )
        return items, page, len(pending) > limit

    async def fetch_since(self, cursor: Cursor, limit: int) -> FetchResult:
        items, page, has_more = await asyncio.to_thread(self._read_page, cursor, limit)
        if not page:
            return FetchResult()
        last = page[-1].cursor
        return FetchResult(
            items=items,
            next_cursor=last if has_more else None,
            last_cursor=last,
        )
