"""WebSocket connection manager with per-room fan-out."""

from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ClientConnection:
    """Wraps a single WebSocket connection with metadata."""

    __slots__ = ("ws", "player_id", "connected_at")

    def __init__(self, ws: WebSocket, player_id: str) -> None:
        self.ws = ws
        self.player_id = player_id
        self.connected_at = time.time()

    async def send(self, text: str) -> bool:
        """Send text, returning False on failure."""
        try:
            await self.ws.send_text(text)
            return True
        except Exception:
            return False


class ConnectionManager:
    """Tracks one WebSocket per player in each room."""

    def __init__(self) -> None:
        # room_code -> {player_id -> ClientConnection}
        self._players: dict[str, dict[str, ClientConnection]] = {}

    async def connect(self, code: str, player_id: str, ws: WebSocket) -> ClientConnection:
        await ws.accept()
        conn = ClientConnection(ws, player_id)

        room = self._players.setdefault(code, {})
        # Close previous connection for this player (stale tab)
        old = room.get(player_id)
        if old is not None:
            try:
                await old.ws.close(code=4001, reason="Replaced by new connection")
            except Exception:
                logger.debug("Failed to close replaced socket for %s", player_id)
        room[player_id] = conn

        logger.info("WS connect: room=%s player=%s", code, player_id)
        return conn

    def disconnect(
        self, code: str, player_id: str, conn: Optional[ClientConnection] = None
    ) -> None:
        """Remove a connection; with ``conn`` only if it is still the current one."""
        room = self._players.get(code)
        if room is None:
            return
        existing = room.get(player_id)
        if existing is not None and (conn is None or existing is conn):
            del room[player_id]
            if not room:
                del self._players[code]
            logger.info("WS disconnect: room=%s player=%s", code, player_id)

    async def send_to_player(self, code: str, player_id: str, message: str) -> None:
        conn = self._players.get(code, {}).get(player_id)
        if conn and not await conn.send(message):
            self.disconnect(code, player_id, conn)

    async def broadcast(self, code: str, message: str) -> None:
        """Send the same message to everyone connected to a room."""
        stale: list[str] = []
        for pid, conn in list(self._players.get(code, {}).items()):
            if not await conn.send(message):
                stale.append(pid)
        for pid in stale:
            self.disconnect(code, pid)

    def get_connected_player_ids(self, code: str) -> set[str]:
        return set(self._players.get(code, {}))


manager = ConnectionManager()
