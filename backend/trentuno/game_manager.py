"""Game manager: room registry and gameplay operations.

Each room's engine lives in Redis.  Every operation on a room loads the
engine, applies one action and stores it back while holding that room's
lock, so actions on one room are strictly serialized and rooms never
share state.

Player ids are public (they appear in room summaries and snapshots).  Acting
as a player requires the secret token issued when that player was seated;
only its SHA-256 hash is stored with the engine.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import random
import secrets
import uuid
from typing import Any, Callable, Optional

from trentuno import redis_client
from trentuno.engine import GameEngine
from trentuno.models import (
    CreateRoomRequest,
    JoinRoomRequest,
    PlayerInfo,
    RoomSettings,
    RoomState,
    RoomStatus,
)

logger = logging.getLogger(__name__)

# No 0/O or 1/I so codes can be read out loud
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

_locks: dict[str, asyncio.Lock] = {}


def _get_lock(code: str) -> asyncio.Lock:
    """Per-room lock serializing every load-apply-save cycle."""
    lock = _locks.get(code)
    if lock is None:
        lock = _locks[code] = asyncio.Lock()
    return lock


def forget_room(code: str) -> None:
    """Drop the lock of a room that no longer exists."""
    _locks.pop(code, None)


def _generate_code(length: int = 6) -> str:
    """Generate a short uppercase room code."""
    return "".join(random.choices(CODE_ALPHABET, k=length))


def _new_token() -> str:
    return secrets.token_urlsafe(24)


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def _verify_player(engine: GameEngine, player_id: str, token: str) -> None:
    """Raise ValueError unless ``token`` authorizes ``player_id`` in this room."""
    player = engine.players.get(player_id)
    if player is None:
        raise ValueError("Player not found")
    if player.token_hash is None or not hmac.compare_digest(
        _hash_token(token), player.token_hash
    ):
        raise ValueError("Invalid player token")


async def _load_engine(code: str) -> GameEngine:
    """Load a room's engine from Redis."""
    engine_data = await redis_client.load_engine(code)
    if engine_data is None:
        # No room, no lock
        forget_room(code)
        raise ValueError("Room not found")
    return GameEngine.from_dict(engine_data)


async def _save_engine(code: str, engine: GameEngine) -> None:
    """Persist a room's engine to Redis."""
    await redis_client.store_engine(code, engine.to_dict())
    await redis_client.touch_activity(code)


async def _apply(
    code: str,
    player_id: str,
    token: str,
    action: Callable[[GameEngine], dict[str, Any]],
) -> dict[str, Any]:
    """Run one engine action for an authenticated player under the room lock.

    Rejections raise ValueError and nothing is saved.
    """
    async with _get_lock(code):
        engine = await _load_engine(code)
        _verify_player(engine, player_id, token)
        result = action(engine)
        if not result["success"]:
            raise ValueError(result["error"])
        await _save_engine(code, engine)
    return result


def _room_status(engine: GameEngine) -> RoomStatus:
    if engine.game_over:
        return RoomStatus.ENDED
    if engine.started:
        return RoomStatus.ACTIVE
    return RoomStatus.LOBBY


def _build_room_state(engine: GameEngine, connected: set[str]) -> RoomState:
    return RoomState(
        code=engine.game_code,
        status=_room_status(engine),
        settings=RoomSettings(
            max_players=engine.max_players,
            coins_per_player=engine.coins_per_player,
        ),
        players=[
            PlayerInfo(
                id=p.player_id,
                name=p.name,
                coins=p.coins,
                connected=p.player_id in connected,
            )
            for p in engine.players.values()
        ],
    )


def build_player_view(engine: GameEngine, player_id: str) -> dict[str, Any]:
    """Snapshot for one participant: opponents' hands are hidden mid-round."""
    state = engine.get_game_state()
    for pid, p_data in state["players"].items():
        p_data["card_count"] = len(p_data["hand"])
        if pid != player_id and engine.round_active:
            p_data["hand"] = []
            p_data["score"] = None

    state["you"] = player_id
    state["valid_actions"] = engine.get_valid_actions(player_id)
    return state


# ------------------------------------------------------------------
# Lobby
# ------------------------------------------------------------------


async def create_room(req: CreateRoomRequest) -> tuple[str, str, str, RoomState]:
    """Create a new room seating its creator.

    Returns (code, player_id, token, room).
    """
    player_id = str(uuid.uuid4())
    token = _new_token()

    # The set-if-absent store makes the code claim atomic; retry on collision
    while True:
        code = _generate_code()
        engine = GameEngine(
            game_code=code,
            coins_per_player=req.settings.coins_per_player,
            max_players=req.settings.max_players,
        )
        engine.add_player(player_id, req.player_name, _hash_token(token))
        if await redis_client.store_new_engine(code, engine.to_dict()):
            break
        logger.debug("Room code %s already taken, retrying", code)

    await redis_client.touch_activity(code)
    logger.info("Room %s created by %s", code, req.player_name)
    return code, player_id, token, _build_room_state(engine, set())


async def join_room(code: str, req: JoinRoomRequest) -> tuple[str, str, RoomState]:
    """Join an existing room. Returns (player_id, token, room)."""
    player_id = str(uuid.uuid4())
    token = _new_token()
    async with _get_lock(code):
        engine = await _load_engine(code)
        for p in engine.players.values():
            if p.name.lower() == req.player_name.lower():
                raise ValueError("Name already taken")

        result = engine.add_player(player_id, req.player_name, _hash_token(token))
        if not result["success"]:
            raise ValueError(result["error"])
        await _save_engine(code, engine)

    logger.info("%s joined room %s", req.player_name, code)
    connected = await redis_client.load_connected(code)
    return player_id, token, _build_room_state(engine, connected)


async def _remove_player(
    code: str, player_id: str, verify: Callable[[GameEngine], None]
) -> dict[str, Any]:
    async with _get_lock(code):
        engine = await _load_engine(code)
        verify(engine)
        result = engine.remove_player(player_id)
        if not result["success"]:
            raise ValueError(result["error"])

        if engine.players:
            await _save_engine(code, engine)
            result["room_deleted"] = False
        else:
            await redis_client.delete_room(code)
            result["room_deleted"] = True

    if result["room_deleted"]:
        forget_room(code)
        logger.info("Room %s deleted (empty)", code)
    return result


async def leave_room(code: str, player_id: str, token: str) -> dict[str, Any]:
    """Remove a player at their own request; the room is deleted once empty.

    Returns the engine result with an extra ``room_deleted`` flag.
    """
    return await _remove_player(
        code, player_id, lambda engine: _verify_player(engine, player_id, token)
    )


async def drop_player(code: str, player_id: str) -> dict[str, Any]:
    """Remove a player whose socket closed (authenticated when it connected)."""
    logger.info("Dropping disconnected player %s from room %s", player_id, code)
    return await _remove_player(code, player_id, lambda engine: None)


async def get_room_state(code: str) -> Optional[RoomState]:
    """Get the lobby summary for a room, or None if it does not exist."""
    engine_data = await redis_client.load_engine(code)
    if engine_data is None:
        return None
    engine = GameEngine.from_dict(engine_data)
    connected = await redis_client.load_connected(code)
    return _build_room_state(engine, connected)


async def set_player_connected(code: str, player_id: str, connected: bool) -> None:
    """Update player connected status."""
    await redis_client.set_connected(code, player_id, connected)


# ------------------------------------------------------------------
# Gameplay
# ------------------------------------------------------------------


async def get_game_state(code: str) -> dict[str, Any]:
    """Full engine snapshot (all hands visible)."""
    engine = await _load_engine(code)
    return engine.get_game_state()


async def get_player_view(code: str, player_id: str, token: str) -> dict[str, Any]:
    """Engine snapshot as seen by one authenticated participant."""
    engine = await _load_engine(code)
    _verify_player(engine, player_id, token)
    return build_player_view(engine, player_id)


async def get_player_views(code: str, player_ids: set[str]) -> dict[str, dict[str, Any]]:
    """Views for already-authenticated connections, from a single load."""
    engine = await _load_engine(code)
    return {
        pid: build_player_view(engine, pid)
        for pid in player_ids
        if pid in engine.players
    }


async def start_game(code: str, player_id: str, token: str) -> dict[str, Any]:
    """Start the game; any seated player may trigger it."""
    return await _apply(code, player_id, token, lambda engine: engine.start_game())


async def next_round(code: str, player_id: str, token: str) -> dict[str, Any]:
    """Deal the next round once the previous one has ended."""
    return await _apply(code, player_id, token, lambda engine: engine.start_round())


async def draw_card(code: str, player_id: str, token: str, source: str) -> dict[str, Any]:
    return await _apply(
        code, player_id, token, lambda engine: engine.draw_card(player_id, source)
    )


async def discard_card(
    code: str, player_id: str, token: str, position: int
) -> dict[str, Any]:
    return await _apply(
        code, player_id, token, lambda engine: engine.discard_card(player_id, position)
    )


async def knock(code: str, player_id: str, token: str) -> dict[str, Any]:
    return await _apply(code, player_id, token, lambda engine: engine.knock(player_id))


async def declare_31(code: str, player_id: str, token: str) -> dict[str, Any]:
    return await _apply(
        code, player_id, token, lambda engine: engine.declare_31(player_id)
    )
