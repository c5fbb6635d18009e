"""Tests for dedupe-key derivation and the duplicate lookup order."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from estate_agenda.calendar.idempotency import derive_dedupe_key, find_existing, wall_clock
from tests.conftest import ROME, make_event

pytestmark = pytest.mark.unit

START = datetime(2025, 6, 10, 16, 0, tzinfo=ROME)
TITLE = "Rossi - 393331234567"


class TestWallClock:
    def test_drops_offset_and_microseconds(self):
        assert wall_clock(START.replace(microsecond=123)) == "2025-06-10T16:00:00"


class TestDeriveDedupeKey:
    def test_is_sha256_hex(self):
        key = derive_dedupe_key(TITLE, START, "Via Roma 5")
        assert len(key) == 64
        assert int(key, 16) >= 0

    def test_equal_inputs_equal_keys(self):
        assert derive_dedupe_key(TITLE, START, "Via Roma 5") == derive_dedupe_key(
            TITLE, START, "Via Roma 5"
        )

    @pytest.mark.parametrize(
        ("title", "start", "location"),
        [
            ("Bianchi - 393331234567", START, "Via Roma 5"),
            (TITLE, START + timedelta(minutes=30), "Via Roma 5"),
            (TITLE, START, "Via Roma 7"),
            (TITLE, START, None),
        ],
    )
    def test_any_field_change_changes_key(self, title, start, location):
        baseline = derive_dedupe_key(TITLE, START, "Via Roma 5")
        assert derive_dedupe_key(title, start, location) != baseline

    def test_missing_location_equals_empty(self):
        assert derive_dedupe_key(TITLE, START, None) == derive_dedupe_key(TITLE, START, "")

    def test_uses_wall_clock_not_instant(self):
        # Same instant, different zone: different wall clock, different key
        same_instant = START.astimezone(UTC)
        assert derive_dedupe_key(TITLE, START, None) != derive_dedupe_key(
            TITLE, same_instant, None
        )


class TestFindExisting:
    def _store(self, *, by_ref=None, by_key=None) -> AsyncMock:
        store = AsyncMock()
        store.get_by_confirmation_ref.return_value = by_ref
        store.get_by_dedupe_key.return_value = by_key
        return store

    async def test_confirmation_ref_wins(self):
        by_ref = make_event(confirmation_ref=42)
        store = self._store(by_ref=by_ref, by_key=make_event())

        assert await find_existing(store, confirmation_ref=42, dedupe_key="k") is by_ref
        store.get_by_dedupe_key.assert_not_awaited()

    async def test_falls_back_to_dedupe_key(self):
        by_key = make_event()
        store = self._store(by_ref=None, by_key=by_key)

        assert await find_existing(store, confirmation_ref=42, dedupe_key="k") is by_key
        store.get_by_confirmation_ref.assert_awaited_once_with(42)
        store.get_by_dedupe_key.assert_awaited_once_with("k")

    async def test_without_confirmation_ref_only_key_is_checked(self):
        store = self._store(by_key=None)

        assert await find_existing(store, confirmation_ref=None, dedupe_key="k") is None
        store.get_by_confirmation_ref.assert_not_awaited()
