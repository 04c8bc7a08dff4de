"""
foundpoems/realtime/hub.py
In-memory presence and broadcast hub for live sessions.

One room per session. Presence is keyed by participant token: several sockets
opened with the same token count as one participant. Capacity checks and
registration happen under the same lock, so two joins cannot both take the
last seat.
"""

from dataclasses import dataclass
from typing import Dict, Optional
from fastapi import WebSocket
import asyncio
import logging
import time

from foundpoems.core.errors import CapacityError
from foundpoems.core.metrics import (
    presence_participants,
    sessions_active_rooms,
    ws_active_connections,
    ws_connections_total,
    ws_messages_sent_total,
)

logger = logging.getLogger(__name__)


@dataclass
class _Connection:
    session_id: str
    token: str
    last_seen: float


class SessionHub:
    """
    Room-per-session broadcast hub with token-keyed presence.

    Maps session_id -> {WebSocket: _Connection}.
    """

    def __init__(self, clock=time.monotonic):
        self._rooms: Dict[str, Dict[WebSocket, _Connection]] = {}
        self._clock = clock
        self._lock = asyncio.Lock()

    def _tokens(self, session_id: str) -> set:
        return {c.token for c in self._rooms.get(session_id, {}).values()}

    def _update_gauges(self) -> None:
        ws_active_connections.set(sum(len(room) for room in self._rooms.values()))
        sessions_active_rooms.set(len(self._rooms))
        presence_participants.set(sum(len(self._tokens(sid)) for sid in self._rooms))

    async def try_join(
        self,
        session_id: str,
        token: str,
        websocket: WebSocket,
        max_participants: Optional[int] = None,
    ) -> int:
        """
        Register a socket if the room has a free seat.

        A token that is already present always gets in (reconnects, second tab).

        Returns:
            Distinct participant count after the join

        Raises:
            CapacityError: the room already holds max_participants other tokens
        """
        async with self._lock:
            present = self._tokens(session_id)
            if max_participants is not None and token not in present and len(present) >= max_participants:
                raise CapacityError("Session is at capacity")
            room = self._rooms.setdefault(session_id, {})
            room[websocket] = _Connection(session_id, token, self._clock())
            ws_connections_total.inc()
            self._update_gauges()
            count = len(self._tokens(session_id))
        logger.debug(f"[HUB] {session_id}: joined, {count} present")
        return count

    async def leave(self, session_id: str, websocket: WebSocket) -> int:
        """Unregister a socket; returns the remaining distinct participant count."""
        async with self._lock:
            room = self._rooms.get(session_id)
            if room is not None:
                room.pop(websocket, None)
                if not room:
                    del self._rooms[session_id]
            self._update_gauges()
            return len(self._tokens(session_id))

    async def touch(self, session_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            conn = self._rooms.get(session_id, {}).get(websocket)
            if conn is not None:
                conn.last_seen = self._clock()

    async def is_present(self, session_id: str, token: Optional[str]) -> bool:
        if not token:
            return False
        async with self._lock:
            return token in self._tokens(session_id)

    async def participant_count(self, session_id: str) -> int:
        async with self._lock:
            return len(self._tokens(session_id))

    async def broadcast(self, session_id: str, message: dict) -> int:
        """
        Send message to every socket in the room; dead sockets are pruned.

        Returns:
            Number of sockets that received the message
        """
        async with self._lock:
            sockets = list(self._rooms.get(session_id, {}))
        if not sockets:
            return 0

        event_type = str(message.get("type") or "unknown")
        dead = []
        delivered = 0
        for ws in sockets:
            try:
                await ws.send_json(message)
                delivered += 1
                ws_messages_sent_total.inc(labels={"event_type": event_type})
            except Exception as e:
                logger.debug(f"[HUB] Failed to send to socket: {e}")
                dead.append(ws)

        if dead:
            async with self._lock:
                room = self._rooms.get(session_id, {})
                for ws in dead:
                    room.pop(ws, None)
                if session_id in self._rooms and not room:
                    del self._rooms[session_id]
                self._update_gauges()
            logger.debug(f"[HUB] Pruned {len(dead)} dead sockets from session {session_id}")
        return delivered

    async def prune_stale(self, ttl_seconds: float) -> int:
        """Close and drop sockets silent for longer than ttl_seconds."""
        cutoff = self._clock() - ttl_seconds
        async with self._lock:
            stale = [
                (sid, ws)
                for sid, room in self._rooms.items()
                for ws, conn in room.items()
                if conn.last_seen < cutoff
            ]
            for sid, ws in stale:
                self._rooms[sid].pop(ws, None)
            for sid in {sid for sid, _ in stale}:
                if not self._rooms[sid]:
                    del self._rooms[sid]
            self._update_gauges()

        for _, ws in stale:
            try:
                await ws.close(code=1001, reason="Presence expired")
            except Exception:
                pass
        if stale:
            logger.info(f"[HUB] Reclaimed {len(stale)} stale connections")
        return len(stale)

    async def reset(self) -> None:
        async with self._lock:
            self._rooms.clear()
            self._update_gauges()


# Global singleton hub instance
hub = SessionHub()
