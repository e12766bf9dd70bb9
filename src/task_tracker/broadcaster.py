"""
Per-user WebSocket event fan-out.

Each user id owns a logical room. A connected session only receives events
after it has joined its owner's room, and events published to one room are
never delivered to sessions in another. Delivery is best-effort and
at-most-once: nothing is acknowledged, retried or replayed.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from .errors import ValidationError

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    TASK_CREATED = "task:created"
    TASK_UPDATED = "task:updated"
    TASK_DELETED = "task:deleted"


def event_timestamp() -> str:
    """Current UTC time as ISO-8601 with a trailing Z."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class _Session:
    session_id: str
    handle: Any
    user_id: Optional[str] = None
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EventBroadcaster:
    """
    WebSocket session registry with room-scoped parallel broadcasting.

    Handles connection lifecycle, room membership (one room per user id),
    and parallel delivery to the sessions of a single room. Membership
    changes and room snapshots happen under an asyncio lock; sends happen
    outside it on a snapshot, so a session disconnecting mid-broadcast only
    loses its own message.
    """

    def __init__(self, max_connections: int = 200, send_timeout_seconds: float = 5.0):
        self.max_connections = max_connections
        self.send_timeout_seconds = send_timeout_seconds
        self._sessions: Dict[str, _Session] = {}
        self._rooms: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()
        self.total_broadcasts = 0
        self.total_deliveries = 0

    async def connect(self, websocket, session_id: Optional[str] = None) -> Optional[str]:
        """
        Accept a WebSocket and register it as a session outside any room.

        Returns:
            The session id, or None when the connection cap is reached
        """
        await websocket.accept()
        async with self._lock:
            if len(self._sessions) >= self.max_connections:
                logger.warning(
                    f"Rejecting WebSocket: connection cap {self.max_connections} reached"
                )
                return None
            session_id = session_id or uuid.uuid4().hex
            self._sessions[session_id] = _Session(session_id=session_id, handle=websocket)
            total = len(self._sessions)
        logger.info(f"WebSocket connected session={session_id}. Total connections: {total}")
        return session_id

    async def join(self, session_id: str, user_id: str) -> bool:
        """
        Place a session in its owner's room.

        The caller's identity is assumed to be verified upstream. A session
        belongs to at most one room; joining another room moves it.

        Returns:
            True if joined, False if the session is unknown
        """
        if not user_id:
            raise ValidationError("user_id is required to join a room")

        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            self._remove_from_room(session)
            session.user_id = user_id
            self._rooms.setdefault(user_id, set()).add(session_id)
            room_size = len(self._rooms[user_id])
        logger.info(f"Session {session_id} joined room user={user_id} (room size {room_size})")
        return True

    async def leave(self, session_id: str) -> None:
        """Remove a session from its room while keeping it connected."""
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                self._remove_from_room(session)

    async def disconnect(self, session_id: str) -> None:
        """Forget a session entirely."""
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is not None:
                self._remove_from_room(session)
            total = len(self._sessions)
        if session is not None:
            logger.info(f"WebSocket disconnected session={session_id}. Total connections: {total}")

    def _remove_from_room(self, session: _Session) -> None:
        # Caller holds self._lock
        if session.user_id is None:
            return
        members = self._rooms.get(session.user_id)
        if members is not None:
            members.discard(session.session_id)
            if not members:
                del self._rooms[session.user_id]
        session.user_id = None

    async def publish(self, user_id: str, event_kind: str, payload: Dict[str, Any]) -> int:
        """
        Broadcast an event to every session in ``user_id``'s room in parallel.

        Args:
            user_id: Owner whose room receives the event
            event_kind: One of the EventKind values
            payload: JSON-serialisable event data

        Returns:
            Number of sessions the message was written to
        """
        try:
            kind = EventKind(event_kind)
        except ValueError:
            raise ValidationError(f"Unknown event kind: {event_kind!r}")

        message = json.dumps({
            "type": kind.value,
            "timestamp": event_timestamp(),
            "data": payload,
        })

        async with self._lock:
            targets: List[_Session] = [
                self._sessions[session_id]
                for session_id in self._rooms.get(user_id, ())
                if session_id in self._sessions
            ]

        self.total_broadcasts += 1
        if not targets:
            logger.debug(f"No sessions in room user={user_id} for {kind.value}")
            return 0

        results = await asyncio.gather(
            *(self._send_safe(session, message) for session in targets),
            return_exceptions=True,
        )
        delivered = sum(1 for result in results if result is True)
        self.total_deliveries += delivered
        logger.info(f"Broadcast {kind.value} to user={user_id} delivered={delivered}/{len(targets)}")
        return delivered

    async def _send_safe(self, session: _Session, message: str) -> bool:
        """
        Send to one session, dropping it from the registry on failure.

        Returns:
            True if successful, False if the connection failed
        """
        try:
            await asyncio.wait_for(
                session.handle.send_text(message), timeout=self.send_timeout_seconds
            )
            return True
        except Exception as e:
            logger.warning(f"Failed to send to session {session.session_id}: {e}")
            await self.disconnect(session.session_id)
            return False

    def get_connection_count(self) -> int:
        """Get current number of connected sessions."""
        return len(self._sessions)

    def get_room_size(self, user_id: str) -> int:
        return len(self._rooms.get(user_id, ()))

    def get_connection_stats(self) -> Dict[str, Any]:
        return {
            "active_connections": len(self._sessions),
            "rooms": len(self._rooms),
            "max_connections": self.max_connections,
            "total_broadcasts": self.total_broadcasts,
            "total_deliveries": self.total_deliveries,
        }
