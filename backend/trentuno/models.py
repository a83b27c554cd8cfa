"""Pydantic models for the Trentuno room API."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from trentuno.engine import DEFAULT_COINS_PER_PLAYER, MAX_PLAYERS, MIN_PLAYERS, DrawSource


class RoomStatus(str, Enum):
    LOBBY = "lobby"
    ACTIVE = "active"
    ENDED = "ended"


class RoomSettings(BaseModel):
    max_players: int = Field(default=MAX_PLAYERS, ge=MIN_PLAYERS, le=MAX_PLAYERS)
    coins_per_player: int = Field(default=DEFAULT_COINS_PER_PLAYER, ge=1, le=20)


# --- Request models ---


class CreateRoomRequest(BaseModel):
    player_name: str = Field(..., min_length=1, max_length=20)
    settings: RoomSettings = Field(default_factory=RoomSettings)


class JoinRoomRequest(BaseModel):
    player_name: str = Field(..., min_length=1, max_length=20)


class PlayerRequest(BaseModel):
    """Any action that only needs to know who is acting.

    ``token`` is the secret handed out on create/join; ``player_id`` is public.
    """

    player_id: str
    token: str = Field(..., min_length=1)


class DrawRequest(PlayerRequest):
    source: DrawSource


class DiscardRequest(PlayerRequest):
    position: int


# --- Response / state models ---


class PlayerInfo(BaseModel):
    """Public-facing player information (no cards)."""

    id: str
    name: str
    coins: int = 0
    connected: bool = False


class RoomState(BaseModel):
    """Lobby-level room summary sent to clients."""

    code: str
    status: RoomStatus
    settings: RoomSettings
    players: list[PlayerInfo]


class CreateRoomResponse(BaseModel):
    code: str
    player_id: str
    token: str
    room: RoomState


class JoinRoomResponse(BaseModel):
    player_id: str
    token: str
    room: RoomState
