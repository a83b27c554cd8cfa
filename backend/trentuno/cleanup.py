"""Stale room cleanup: background task that removes abandoned rooms from Redis.

A room is considered stale when nothing has happened in it for
STALE_THRESHOLD seconds (default 24 h).  Rooms whose game reached game
over are kept longer (COMPLETED_THRESHOLD, default 72 h) so players can
review the final result.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from trentuno import game_manager, redis_client

logger = logging.getLogger(__name__)

# How often the cleanup loop runs (seconds).  Default: every 30 minutes.
CLEANUP_INTERVAL: float = 30 * 60

# Inactivity threshold before an unfinished room is deleted (seconds).
STALE_THRESHOLD: float = 24 * 60 * 60

# Inactivity threshold before a finished room is deleted (seconds).
COMPLETED_THRESHOLD: float = 72 * 60 * 60


def _is_game_finished(engine_data: dict[str, Any] | None) -> bool:
    return bool(engine_data and engine_data.get("game_over"))


async def cleanup_stale_rooms() -> dict[str, list[str]]:
    """Scan all rooms in Redis and delete stale ones.

    Returns a dict with 'deleted' (codes removed) and 'kept' (codes
    checked but retained).
    """
    now = time.time()
    codes = await redis_client.list_all_room_codes()
    deleted: list[str] = []
    kept: list[str] = []

    for code in codes:
        try:
            last_activity = await redis_client.get_last_activity(code)

            # No timestamp yet: start the clock now
            if last_activity is None:
                await redis_client.touch_activity(code)
                kept.append(code)
                continue

            age = now - last_activity
            engine_data = await redis_client.load_engine(code)
            finished = _is_game_finished(engine_data)
            threshold = COMPLETED_THRESHOLD if finished else STALE_THRESHOLD

            if age >= threshold:
                await redis_client.delete_room(code)
                game_manager.forget_room(code)
                logger.info(
                    "Cleaned up room %s (age=%.1fh, finished=%s)",
                    code,
                    age / 3600,
                    finished,
                )
                deleted.append(code)
            else:
                kept.append(code)
        except Exception:
            logger.exception("Error checking room %s for cleanup", code)
            kept.append(code)

    return {"deleted": deleted, "kept": kept}


class RoomCleaner:
    """Background asyncio task that periodically removes stale rooms."""

    def __init__(self) -> None:
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info("Room cleaner started (interval=%ds)", int(CLEANUP_INTERVAL))

    def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            logger.info("Room cleaner stopped")

    async def _loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(CLEANUP_INTERVAL)
                try:
                    result = await cleanup_stale_rooms()
                    if result["deleted"]:
                        logger.info(
                            "Cleanup pass: deleted %d room(s): %s",
                            len(result["deleted"]),
                            ", ".join(result["deleted"]),
                        )
                    else:
                        logger.debug("Cleanup pass: nothing to delete")
                except Exception:
                    logger.exception("Cleanup pass failed")
        except asyncio.CancelledError:
            pass


# Singleton
room_cleaner = RoomCleaner()
