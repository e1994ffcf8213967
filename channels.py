"""Per-identity websocket rooms used to push session and notification events."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Dict, Set

from fastapi import WebSocket, WebSocketDisconnect

from schemas import Identity

logger = logging.getLogger(__name__)


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


def role_room(role: str) -> str:
    return f"role:{role}"


class ConnectionHub:
    """Groups open sockets into user:{id} and role:{role} rooms."""

    def __init__(self) -> None:
        self._rooms: Dict[str, Set[WebSocket]] = defaultdict(set)

    def connect(self, websocket: WebSocket, identity: Identity) -> None:
        self._rooms[user_room(identity.id)].add(websocket)
        self._rooms[role_room(identity.role)].add(websocket)
        logger.info("User %s connected via WebSocket", identity.id)

    def disconnect(self, websocket: WebSocket, identity: Identity) -> bool:
        """Drop the socket; returns True when the user has no sockets left."""
        for room in (user_room(identity.id), role_room(identity.role)):
            members = self._rooms.get(room)
            if members is not None:
                members.discard(websocket)
                if not members:
                    del self._rooms[room]
        logger.info("User %s disconnected", identity.id)
        return not self.is_connected(identity.id)

    def is_connected(self, user_id: str) -> bool:
        return bool(self._rooms.get(user_room(user_id)))

    async def emit_to_user(self, user_id: str, event: str, data: Dict[str, Any]) -> None:
        await self._emit(user_room(user_id), event, data)

    async def emit_to_role(self, role: str, event: str, data: Dict[str, Any]) -> None:
        await self._emit(role_room(role), event, data)

    async def _emit(self, room: str, event: str, data: Dict[str, Any]) -> None:
        members = self._rooms.get(room)
        if not members:
            logger.debug("No listeners in %s for %s", room, event)
            return
        for websocket in list(members):
            await self._send(websocket, event, data)

    async def _send(self, websocket: WebSocket, event: str, data: Dict[str, Any]) -> None:
        try:
            await websocket.send_json({"event": event, "data": data})
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            # the socket closed underneath us; the receive loop will clean up
            logger.warning("Dropping %s for a closed socket: %s", event, exc)
            for members in self._rooms.values():
                members.discard(websocket)
