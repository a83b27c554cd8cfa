"""Tests for stale room cleanup with mocked Redis."""

from __future__ import annotations

import time
from unittest.mock import AsyncMock, patch

import pytest

from trentuno import game_manager
from trentuno.cleanup import COMPLETED_THRESHOLD, STALE_THRESHOLD, cleanup_stale_rooms

PATCH_BASE = "trentuno.cleanup.redis_client"

HOUR = 60 * 60


class TestCleanupStaleRooms:
    @pytest.fixture(autouse=True)
    def _mock_redis(self):
        with patch(f"{PATCH_BASE}.list_all_room_codes", new_callable=AsyncMock) as m1, \
             patch(f"{PATCH_BASE}.get_last_activity", new_callable=AsyncMock) as m2, \
             patch(f"{PATCH_BASE}.load_engine", new_callable=AsyncMock) as m3, \
             patch(f"{PATCH_BASE}.delete_room", new_callable=AsyncMock) as m4, \
             patch(f"{PATCH_BASE}.touch_activity", new_callable=AsyncMock) as m5:
            self.list_codes = m1
            self.last_activity = m2
            self.load_engine = m3
            self.delete_room = m4
            self.touch_activity = m5
            yield

    def _rooms(self, rooms: dict[str, tuple[float | None, bool]]) -> None:
        """rooms: code -> (age in seconds or None, game_over)."""
        now = time.time()
        self.list_codes.return_value = list(rooms)
        self.last_activity.side_effect = lambda code: (
            None if rooms[code][0] is None else now - rooms[code][0]
        )
        self.load_engine.side_effect = lambda code: {"game_over": rooms[code][1]}

    async def test_fresh_room_kept(self):
        self._rooms({"NEW111": (HOUR, False)})
        result = await cleanup_stale_rooms()
        assert result == {"deleted": [], "kept": ["NEW111"]}
        self.delete_room.assert_not_called()

    async def test_stale_room_deleted(self):
        self._rooms({"OLD111": (STALE_THRESHOLD + HOUR, False)})
        result = await cleanup_stale_rooms()
        assert result["deleted"] == ["OLD111"]
        self.delete_room.assert_awaited_once_with("OLD111")

    async def test_finished_room_kept_longer(self):
        self._rooms({
            "DONE11": (STALE_THRESHOLD + HOUR, True),
            "DONE22": (COMPLETED_THRESHOLD + HOUR, True),
        })
        result = await cleanup_stale_rooms()
        assert result["kept"] == ["DONE11"]
        assert result["deleted"] == ["DONE22"]

    async def test_missing_timestamp_starts_clock(self):
        self._rooms({"NOTS11": (None, False)})
        result = await cleanup_stale_rooms()
        assert result["kept"] == ["NOTS11"]
        self.touch_activity.assert_awaited_once_with("NOTS11")

    async def test_error_keeps_room(self):
        self._rooms({"BAD111": (STALE_THRESHOLD + HOUR, False)})
        self.delete_room.side_effect = RuntimeError("redis down")
        result = await cleanup_stale_rooms()
        assert result == {"deleted": [], "kept": ["BAD111"]}

    async def test_deleted_room_lock_is_dropped(self):
        self._rooms({
            "OLD111": (STALE_THRESHOLD + HOUR, False),
            "NEW111": (HOUR, False),
        })
        game_manager._get_lock("OLD111")
        game_manager._get_lock("NEW111")
        try:
            await cleanup_stale_rooms()
            assert "OLD111" not in game_manager._locks
            assert "NEW111" in game_manager._locks
        finally:
            game_manager._locks.clear()
