"""Tests for the cursor type shared by sources, exporters and backfill."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from src.sync.base import Cursor
from src.sync.tests.conftest import NOW


class TestCursor:
    def test_naive_timestamp_treated_as_utc(self) -> None:
        cursor = Cursor(datetime(2026, 2, 23, 12, 0))
        assert cursor.timestamp == NOW
        assert cursor.timestamp.tzinfo is timezone.utc

    def test_later_timestamp_is_after(self) -> None:
        cursor = Cursor(NOW, last_id=10)
        assert cursor.is_after(NOW + timedelta(seconds=1), 1)
        assert not cursor.is_after(NOW - timedelta(seconds=1), 99)

    def test_same_timestamp_compares_ids(self) -> None:
        cursor = Cursor(NOW, last_id=9)
        assert cursor.is_after(NOW, 10)
        assert not cursor.is_after(NOW, 9)
        assert not cursor.is_after(NOW, 8)

    def test_string_ids(self) -> None:
        cursor = Cursor(NOW, last_id="b.png")
        assert cursor.is_after(NOW, "c.png")
        assert not cursor.is_after(NOW, "a.png")

    def test_no_id_excludes_same_timestamp(self) -> None:
        assert not Cursor(NOW).is_after(NOW, 1)

    def test_json_round_trip(self) -> None:
        cursor = Cursor(NOW, last_id=42)
        assert Cursor.from_json(cursor.to_json()) == cursor

    def test_from_json_handles_bad_input(self) -> None:
        assert Cursor.from_json(None) is None
        assert Cursor.from_json({}) is None
        assert Cursor.from_json({"timestamp": "yesterday"}) is None
        assert Cursor.from_json({"timestamp": "2026-02-23T12:00:00Z"}) == Cursor(NOW)
