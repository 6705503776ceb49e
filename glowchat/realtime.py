"""
Realtime fan-out for chat messages, WebRTC signaling and story updates.

Connections are grouped into rooms named by convention:

- ``user_<id>``: every connection authenticated as that user
- ``chat_<id>``: every connection that joined that chat

The room table lives on a :class:`FanOut` instance and is only mutated from
the event loop, so no locking is needed. It is per-process; running several
workers would need an external pub/sub channel keyed by the same room names.

Delivery is best effort: no acknowledgments, no retry, no queueing for
connections that are not currently joined.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, Set

from fastapi import WebSocket

from glowchat.auth import AuthError

logger = logging.getLogger(__name__)

MESSAGE_NEW = "message:new"
SIGNAL = "signal"
STORIES_UPDATE = "stories:update"


def user_room(user_id: Any) -> str:
    return f"user_{user_id}"


def chat_room(chat_id: Any) -> str:
    return f"chat_{chat_id}"


class Connection(Protocol):
    """A live client channel that can receive named events."""

    sid: str

    async def send(self, event: str, data: Any) -> None:
        ...


class JoinResult(str, Enum):
    JOINED = "joined"
    REJECTED = "rejected"


class WebSocketConnection:
    """Adapts a FastAPI WebSocket to :class:`Connection` using JSON frames."""

    def __init__(self, websocket: WebSocket, sid: Optional[str] = None):
        self.websocket = websocket
        self.sid = sid or uuid.uuid4().hex

    async def send(self, event: str, data: Any) -> None:
        await self.websocket.send_json({"event": event, "data": data})

    def __repr__(self) -> str:
        return f"WebSocketConnection(sid={self.sid!r})"


class FanOut:
    """Owns room membership and delivers events to room members."""

    def __init__(self, token_verifier: Callable[[Optional[str]], dict]):
        self._verify = token_verifier
        self._rooms: Dict[str, Set[Connection]] = {}
        # connection -> rooms it belongs to; doubles as the set of live connections
        self._memberships: Dict[Connection, Set[str]] = {}

    @property
    def connection_count(self) -> int:
        return len(self._memberships)

    def connect(self, connection: Connection) -> None:
        self._memberships.setdefault(connection, set())
        logger.debug("Connection %s registered", connection.sid)

    def disconnect(self, connection: Connection) -> None:
        rooms = self._memberships.pop(connection, set())
        for room in rooms:
            members = self._rooms.get(room)
            if members is None:
                continue
            members.discard(connection)
            if not members:
                del self._rooms[room]
        logger.debug(
            "Connection %s removed from %d room(s)", connection.sid, len(rooms)
        )

    def members(self, room: str) -> frozenset:
        return frozenset(self._rooms.get(room, ()))

    def rooms_of(self, connection: Connection) -> frozenset:
        return frozenset(self._memberships.get(connection, ()))

    def _subscribe(self, connection: Connection, room: str) -> None:
        self._rooms.setdefault(room, set()).add(connection)
        self._memberships.setdefault(connection, set()).add(room)

    def join(
        self, connection: Connection, token: Optional[str], chat_id: Any = None
    ) -> JoinResult:
        """
        Verify ``token`` and subscribe the connection to its user room and,
        when given, the chat room. A bad token subscribes nothing and sends
        nothing to the client.
        """
        try:
            claims = self._verify(token)
        except AuthError as exc:
            logger.info("Join rejected for connection %s: %s", connection.sid, exc)
            return JoinResult.REJECTED

        self._subscribe(connection, user_room(claims["id"]))
        if _is_room_id(chat_id):
            self._subscribe(connection, chat_room(chat_id))
        logger.debug(
            "Connection %s joined %s", connection.sid, sorted(self.rooms_of(connection))
        )
        return JoinResult.JOINED

    async def _deliver(
        self, targets: Iterable[Connection], event: str, data: Any
    ) -> int:
        targets = list(targets)
        if not targets:
            return 0
        results = await asyncio.gather(
            *(conn.send(event, data) for conn in targets), return_exceptions=True
        )
        delivered = 0
        for conn, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "Dropping %s for connection %s: %s", event, conn.sid, result
                )
                self.disconnect(conn)
            else:
                delivered += 1
        return delivered

    async def emit_to_room(self, room: str, event: str, data: Any) -> int:
        return await self._deliver(self.members(room), event, data)

    async def broadcast_message(self, chat_id: Any, message: dict) -> int:
        """Send a persisted message to everyone currently in the chat room."""
        return await self.emit_to_room(chat_room(chat_id), MESSAGE_NEW, message)

    async def relay_signal(self, payload: Any) -> int:
        """
        Forward ``payload`` unchanged to the room named by its ``to`` field.
        Nothing about the payload is validated; an unknown room reaches nobody.
        """
        recipient = payload.get("to") if isinstance(payload, dict) else None
        if recipient is None:
            return 0
        return await self.emit_to_room(str(recipient), SIGNAL, payload)

    async def emit_all(self, event: str, data: Any) -> int:
        return await self._deliver(list(self._memberships), event, data)


def _is_room_id(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    return isinstance(value, (str, int)) and bool(value)


async def handle_frame(fanout: FanOut, connection: Connection, frame: Any) -> None:
    """Dispatch one decoded client frame of the form ``{"event": ..., "data": ...}``."""
    if not isinstance(frame, dict):
        logger.debug("Ignoring non-object frame from %s", connection.sid)
        return
    event = frame.get("event")
    data = frame.get("data")
    if event == "join":
        data = data if isinstance(data, dict) else {}
        fanout.join(connection, data.get("token"), data.get("chatId"))
    elif event == SIGNAL:
        await fanout.relay_signal(data)
    else:
        logger.debug("Ignoring unknown event %r from %s", event, connection.sid)


def decode_frame(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None
