"""FastAPI application: REST + WebSocket endpoints for Trentuno rooms."""

import hmac
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import (
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Request,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from trentuno import game_manager, redis_client
from trentuno.cleanup import cleanup_stale_rooms, room_cleaner
from trentuno.models import (
    CreateRoomRequest,
    CreateRoomResponse,
    DiscardRequest,
    DrawRequest,
    JoinRoomRequest,
    JoinRoomResponse,
    PlayerRequest,
)
from trentuno.ws_manager import manager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    room_cleaner.start()
    yield
    room_cleaner.stop()
    await redis_client.close()


app = FastAPI(title="Trentuno Game API", lifespan=lifespan)

# ---------- Rate Limiting ----------

_rate_limit_enabled = os.getenv("RATE_LIMIT_ENABLED", "1") != "0"

limiter = Limiter(
    key_func=get_remote_address,
    enabled=_rate_limit_enabled,
)
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded. Please slow down."},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # tighten in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------- Admin Auth ----------

ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")


async def verify_admin(authorization: str | None = Header(None)):
    """Validate the admin password from the Authorization header."""
    if not ADMIN_PASSWORD:
        raise HTTPException(
            status_code=503,
            detail="Admin not configured. Set ADMIN_PASSWORD env var.",
        )
    expected = f"Bearer {ADMIN_PASSWORD}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Invalid admin password")


# ---------- Lobby endpoints ----------


@app.post("/api/rooms", response_model=CreateRoomResponse)
@limiter.limit("5/minute")
async def create_room(request: Request, req: CreateRoomRequest):
    code, player_id, token, room = await game_manager.create_room(req)
    return CreateRoomResponse(code=code, player_id=player_id, token=token, room=room)


@app.post("/api/rooms/{code}/join", response_model=JoinRoomResponse)
@limiter.limit("10/minute")
async def join_room(request: Request, code: str, req: JoinRoomRequest):
    try:
        player_id, token, room = await game_manager.join_room(code.upper(), req)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    # Let existing players see the new joiner
    await _broadcast_room(code.upper())
    return JoinRoomResponse(player_id=player_id, token=token, room=room)


@app.get("/api/rooms/{code}")
@limiter.limit("30/minute")
async def get_room(request: Request, code: str):
    room = await game_manager.get_room_state(code.upper())
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    return room


@app.post("/api/rooms/{code}/leave")
@limiter.limit("10/minute")
async def leave_room(request: Request, code: str, req: PlayerRequest):
    try:
        result = await game_manager.leave_room(
            code.upper(), req.player_id, req.token
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await _broadcast_player_left(code.upper(), req.player_id, result)
    return {"ok": True, "room_deleted": result["room_deleted"]}


# ---------- Game endpoints ----------


@app.get("/api/rooms/{code}/state/{player_id}")
@limiter.limit("60/minute")
async def get_player_view(request: Request, code: str, player_id: str, token: str):
    """Game state as seen by one player (opponents' hands hidden)."""
    try:
        return await game_manager.get_player_view(code.upper(), player_id, token)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/api/rooms/{code}/start")
@limiter.limit("5/minute")
async def start_game(request: Request, code: str, req: PlayerRequest):
    try:
        await game_manager.start_game(code.upper(), req.player_id, req.token)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await _broadcast_room(code.upper())
    await _broadcast_engine_state(code.upper())
    return {"ok": True}


@app.post("/api/rooms/{code}/next-round")
@limiter.limit("10/minute")
async def next_round(request: Request, code: str, req: PlayerRequest):
    try:
        await game_manager.next_round(code.upper(), req.player_id, req.token)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await _broadcast_engine_state(code.upper())
    return {"ok": True}


@app.post("/api/rooms/{code}/draw")
@limiter.limit("60/minute")
async def draw_card(request: Request, code: str, req: DrawRequest):
    try:
        result = await game_manager.draw_card(
            code.upper(), req.player_id, req.token, req.source.value
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    # Only the drawer learns the card; others see where it came from
    await _broadcast_action(code.upper(), req.player_id, f"draw_{req.source.value}")
    await _broadcast_engine_state(code.upper())
    return {"ok": True, "drawn_card": result["drawn_card"]}


@app.post("/api/rooms/{code}/discard")
@limiter.limit("60/minute")
async def discard_card(request: Request, code: str, req: DiscardRequest):
    try:
        result = await game_manager.discard_card(
            code.upper(), req.player_id, req.token, req.position
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await _broadcast_action(
        code.upper(), req.player_id, "discard", card=result["discarded_card"]
    )
    await _broadcast_round_end(code.upper(), result)
    await _broadcast_engine_state(code.upper())
    return {
        "ok": True,
        "discarded_card": result["discarded_card"],
        "round_end": result.get("round_end"),
    }


@app.post("/api/rooms/{code}/knock")
@limiter.limit("10/minute")
async def knock(request: Request, code: str, req: PlayerRequest):
    try:
        result = await game_manager.knock(code.upper(), req.player_id, req.token)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await _broadcast_action(code.upper(), req.player_id, "knock")
    await _broadcast_round_end(code.upper(), result)
    await _broadcast_engine_state(code.upper())
    return {"ok": True, "round_end": result.get("round_end")}


@app.post("/api/rooms/{code}/declare-31")
@limiter.limit("10/minute")
async def declare_31(request: Request, code: str, req: PlayerRequest):
    try:
        result = await game_manager.declare_31(code.upper(), req.player_id, req.token)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await _broadcast_action(code.upper(), req.player_id, "declare_31")
    await _broadcast_round_end(code.upper(), result)
    await _broadcast_engine_state(code.upper())
    return {"ok": True, "round_end": result["round_end"]}


@app.post("/api/admin/cleanup")
@limiter.limit("10/minute")
async def admin_cleanup(request: Request, _=Depends(verify_admin)):
    """Manually trigger stale-room cleanup. Returns deleted and kept room codes."""
    return await cleanup_stale_rooms()


# ---------- WebSocket ----------


@app.websocket("/ws/{code}/{player_id}")
async def websocket_endpoint(ws: WebSocket, code: str, player_id: str, token: str = ""):
    code = code.upper()

    try:
        view = await game_manager.get_player_view(code, player_id, token)
    except ValueError:
        await ws.close(code=4004, reason="Invalid room, player or token")
        return

    conn = await manager.connect(code, player_id, ws)
    await game_manager.set_player_connected(code, player_id, True)

    # Send current state immediately on connect
    try:
        await conn.send(json.dumps({"type": "game_state", "data": view}))
        await _broadcast_room(code)
    except Exception:
        logger.debug("Error sending initial state to %s in %s", player_id, code, exc_info=True)

    try:
        while True:
            # Clients only push actions over REST; drain anything they send
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(code, player_id, conn)
        # A reconnect from another tab keeps the seat
        if player_id not in manager.get_connected_player_ids(code):
            await _handle_socket_closed(code, player_id)


# ---------- Helpers ----------


async def _handle_socket_closed(code: str, player_id: str) -> None:
    """A player without a live socket leaves the room, so turns never stall."""
    try:
        await game_manager.set_player_connected(code, player_id, False)
        result = await game_manager.drop_player(code, player_id)
    except ValueError:
        # Already left, or the room is gone
        logger.debug("No seat to drop for %s in %s", player_id, code)
        return

    try:
        await _broadcast_player_left(code, player_id, result)
    except Exception:
        logger.debug("Error broadcasting disconnect for %s in %s", player_id, code, exc_info=True)


async def _broadcast_player_left(code: str, player_id: str, result: dict[str, Any]) -> None:
    """Tell the remaining players someone left, plus any round it ended."""
    if result["room_deleted"]:
        return
    await _broadcast_action(code, player_id, "left")
    await _broadcast_round_end(code, result)
    await _broadcast_room(code)
    await _broadcast_engine_state(code)


async def _broadcast_room(code: str) -> None:
    """Broadcast the lobby summary to all connected clients."""
    room = await game_manager.get_room_state(code)
    if room is not None:
        await manager.broadcast(
            code, json.dumps({"type": "room", "data": room.model_dump(mode="json")})
        )


async def _broadcast_engine_state(code: str) -> None:
    """Send each connected player their own view of the game."""
    player_ids = manager.get_connected_player_ids(code)
    if not player_ids:
        return
    try:
        views = await game_manager.get_player_views(code, player_ids)
    except ValueError:
        logger.debug("No game state to send for %s", code, exc_info=True)
        return
    for pid, view in views.items():
        await manager.send_to_player(
            code, pid, json.dumps({"type": "game_state", "data": view})
        )


async def _broadcast_action(code: str, player_id: str, action: str, **extra: Any) -> None:
    """Tell everyone what just happened (for client-side animation)."""
    await manager.broadcast(
        code,
        json.dumps(
            {"type": "player_action", "player_id": player_id, "action": action, **extra}
        ),
    )


async def _broadcast_round_end(code: str, result: dict[str, Any]) -> None:
    round_end = result.get("round_end")
    if round_end is not None:
        await manager.broadcast(code, json.dumps({"type": "round_end", "data": round_end}))
