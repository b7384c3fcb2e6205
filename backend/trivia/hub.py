from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional, Protocol, Set

from .utils import now_ts

logger = logging.getLogger(__name__)


class Socket(Protocol):
    async def send_json(self, data: Any) -> None: ...


class ConnectionHub:
    """Tracks live sockets and the session rooms they belong to.

    Every outgoing message is wrapped in an envelope carrying a sequence number
    so clients can spot gaps: one counter per room for broadcasts and one per
    connection for direct messages.
    """

    def __init__(self):
        self.connections: Dict[str, Socket] = {}
        self.rooms: Dict[str, Set[str]] = {}
        self._room_seq: Dict[str, int] = {}
        self._direct_seq: Dict[str, int] = {}

    def register(self, socket: Socket, conn_id: str | None = None) -> str:
        conn_id = conn_id or uuid.uuid4().hex
        self.connections[conn_id] = socket
        return conn_id

    def disconnect(self, conn_id: str) -> None:
        self.connections.pop(conn_id, None)
        self._direct_seq.pop(conn_id, None)
        for members in self.rooms.values():
            members.discard(conn_id)

    def join_room(self, code: str, conn_id: str) -> None:
        self.rooms.setdefault(code, set()).add(conn_id)

    def leave_room(self, code: str, conn_id: str) -> None:
        self.rooms.get(code, set()).discard(conn_id)

    def drop_room(self, code: str) -> None:
        self.rooms.pop(code, None)
        self._room_seq.pop(code, None)

    def members(self, code: str) -> List[str]:
        return sorted(self.rooms.get(code, ()))

    def _envelope(self, seq: int, event_type: str, payload: Optional[dict]) -> dict:
        return {
            "type": event_type,
            "seq": seq,
            "timestamp": now_ts(),
            "payload": payload or {},
        }

    async def _deliver(self, conn_id: str, message: dict) -> bool:
        socket = self.connections.get(conn_id)
        if socket is None:
            return False
        try:
            await socket.send_json(message)
        except Exception as exc:
            # The socket's own receive loop reports the disconnect; just stop using it.
            logger.warning("send to %s failed (%s), dropping connection", conn_id, exc)
            self.disconnect(conn_id)
            return False
        return True

    async def send_to_connection(self, conn_id: str, event_type: str, payload: Optional[dict] = None) -> bool:
        seq = self._direct_seq.get(conn_id, 0) + 1
        self._direct_seq[conn_id] = seq
        return await self._deliver(conn_id, self._envelope(seq, event_type, payload))

    async def broadcast(self, code: str, event_type: str, payload: Optional[dict] = None) -> int:
        """Send to every member of the room; returns how many deliveries succeeded."""
        seq = self._room_seq.get(code, 0) + 1
        self._room_seq[code] = seq
        message = self._envelope(seq, event_type, payload)

        delivered = 0
        for conn_id in self.members(code):
            if await self._deliver(conn_id, message):
                delivered += 1
        return delivered
