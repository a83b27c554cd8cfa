"""Redis client wrapper for room state storage."""

from __future__ import annotations

import json
import os
import time
from typing import Any, Optional

import redis.asyncio as redis

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

_pool: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    global _pool
    if _pool is None:
        _pool = redis.from_url(REDIS_URL, decode_responses=True)
    return _pool


def _room_key(code: str) -> str:
    return f"room:{code}"


def _activity_key(code: str) -> str:
    return f"room:{code}:last_activity"


def _connected_key(code: str) -> str:
    return f"room:{code}:connected"


async def store_engine(code: str, data: dict[str, Any]) -> None:
    r = await get_redis()
    await r.set(_room_key(code), json.dumps(data))


async def load_engine(code: str) -> Optional[dict[str, Any]]:
    r = await get_redis()
    raw = await r.get(_room_key(code))
    if raw is None:
        return None
    return json.loads(raw)


async def store_new_engine(code: str, data: dict[str, Any]) -> bool:
    """Store a brand-new room; False if the code is already taken."""
    r = await get_redis()
    return bool(await r.set(_room_key(code), json.dumps(data), nx=True))


async def set_connected(code: str, player_id: str, connected: bool) -> None:
    r = await get_redis()
    if connected:
        await r.sadd(_connected_key(code), player_id)
    else:
        await r.srem(_connected_key(code), player_id)


async def load_connected(code: str) -> set[str]:
    r = await get_redis()
    return set(await r.smembers(_connected_key(code)))


async def touch_activity(code: str) -> None:
    """Update the last-activity timestamp for a room (Unix epoch seconds)."""
    r = await get_redis()
    await r.set(_activity_key(code), str(time.time()))


async def get_last_activity(code: str) -> float | None:
    """Return the last-activity timestamp for a room, or None."""
    r = await get_redis()
    raw = await r.get(_activity_key(code))
    if raw is None:
        return None
    return float(raw)


async def list_all_room_codes() -> list[str]:
    """Return all room codes currently stored in Redis."""
    r = await get_redis()
    codes: set[str] = set()
    async for key in r.scan_iter(match="room:*", count=200):
        # Keys look like room:ABCD12, room:ABCD12:last_activity, etc.
        parts = key.split(":")
        if len(parts) >= 2:
            codes.add(parts[1])
    return list(codes)


async def delete_room(code: str) -> None:
    """Clean up all keys for a room."""
    r = await get_redis()
    await r.delete(_room_key(code), _activity_key(code), _connected_key(code))


async def close() -> None:
    global _pool
    if _pool is not None:
        await _pool.aclose()
        _pool = None
