"""Shared fixtures and in-memory fakes for sync engine tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.services.store import ConfigStore
from src.services.transport import UploadResult
from src.sync.base import Cursor, FetchResult, LocalDataSource
from src.sync.config_loader import SyncDefaults, load_sync_defaults
from src.sync.encryption import EncryptionService

TEST_PASSPHRASE = "correct-horse"
# Fixed clock for every test that needs "now"
NOW = datetime(2026, 2, 23, 12, 0, tzinfo=timezone.utc)


def make_messages(count: int, start: datetime | None = None, chat_id: str = "chat-1") -> list[dict]:
    """Build ``count`` chat messages one minute apart, ids 1..count."""
    start = start or NOW - timedelta(days=1)
    return [
        {
            "id": i,
            "timestamp": start + timedelta(minutes=i),
            "chatId": chat_id,
            "senderName": f"Sender {i}",
            "text": f"message {i}",
        }
        for i in range(1, count + 1)
    ]


class ListSource(LocalDataSource):
    """In-memory LocalDataSource over a list of dicts with ``id`` and ``timestamp``."""

    def __init__(self, items: list[dict[str, Any]], countable: bool = True) -> None:
        self.items = items
        self.countable = countable
        self.open_calls = 0
        self.close_calls = 0
        self.fetch_calls: list[Cursor] = []
        self.fail_open: Exception | None = None

    async def open(self) -> None:
        self.open_calls += 1
        if self.fail_open is not None:
            raise self.fail_open

    async def close(self) -> None:
        self.close_calls += 1

    def _pending(self, cursor: Cursor) -> list[dict[str, Any]]:
        ordered = sorted(self.items, key=lambda m: (m["timestamp"], m["id"]))
        return [m for m in ordered if cursor.is_after(m["timestamp"], m["id"])]

    async def count_since(self, since: datetime) -> int | None:
        if not self.countable:
            return None
        return len(self._pending(Cursor(timestamp=since)))

    async def fetch_since(self, cursor: Cursor, limit: int) -> FetchResult:
        self.fetch_calls.append(cursor)
        pending = self._pending(cursor)
        page = pending[:limit]
        if not page:
            return FetchResult()
        last = Cursor(timestamp=page[-1]["timestamp"], last_id=page[-1]["id"])
        return FetchResult(
            items=[{**m, "timestamp": m["timestamp"].isoformat()} for m in page],
            next_cursor=last if len(pending) > limit else None,
            last_cursor=last,
        )


# ---------------------------------------------------------------------------
# Collaborator fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_defaults() -> SyncDefaults:
    """Load the bundled sync defaults."""
    return load_sync_defaults()


@pytest.fixture
def store(sync_defaults: SyncDefaults) -> ConfigStore:
    """In-memory config store seeded from the bundled defaults."""
    return ConfigStore(path=None, defaults=sync_defaults)


@pytest.fixture
def transport() -> MagicMock:
    """Transport whose uploads always succeed."""
    mock = MagicMock()
    mock.upload_json = AsyncMock(return_value=UploadResult(data={"ok": True}, status=200))
    mock.upload_multipart = AsyncMock(return_value={"ok": True})
    return mock


@pytest.fixture
def encryption() -> EncryptionService:
    return EncryptionService(lambda: TEST_PASSPHRASE)


@pytest.fixture
def plain_encryption() -> EncryptionService:
    """Encryption service with no passphrase configured."""
    return EncryptionService(lambda: None)
