"""
Real-time broadcasts over WebSocket rooms.

Rooms are plain strings (``event:{id}``, ``user:{id}``). ``publish`` is
fire-and-forget and may be called from request handlers or payment worker
threads; sends are scheduled onto the server's event loop.
"""
import asyncio
import logging
import threading
from typing import Any, Dict, Optional, Set
from fastapi import WebSocket

logger = logging.getLogger(__name__)


def event_room(event_id: int) -> str:
    return f"event:{event_id}"


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


class ConnectionManager:
    """Tracks WebSocket connections per room and broadcasts to them."""

    def __init__(self):
        self._rooms: Dict[str, Set[WebSocket]] = {}
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: Optional[asyncio.AbstractEventLoop]):
        """Set the loop used to deliver messages published from other threads."""
        self._loop = loop

    def join(self, room: str, websocket: WebSocket):
        with self._lock:
            self._rooms.setdefault(room, set()).add(websocket)

    def leave_all(self, websocket: WebSocket):
        with self._lock:
            for room in list(self._rooms):
                self._rooms[room].discard(websocket)
                if not self._rooms[room]:
                    del self._rooms[room]

    def connections(self, room: str) -> Set[WebSocket]:
        with self._lock:
            return set(self._rooms.get(room, ()))

    def publish(self, room: str, event: str, payload: Dict[str, Any], exclude: WebSocket = None):
        """Broadcast ``event`` to every connection in ``room``."""
        message = {"event": event, "data": payload}
        targets = self.connections(room)
        if exclude is not None:
            targets.discard(exclude)
        logger.debug(f"Publishing {event} to {room} ({len(targets)} connection(s))")
        if not targets:
            return
        if self._loop is None or self._loop.is_closed():
            logger.debug(f"No event loop bound; dropping {event} for {room}")
            return
        for websocket in targets:
            asyncio.run_coroutine_threadsafe(self._send(websocket, message), self._loop)

    async def _send(self, websocket: WebSocket, message: Dict[str, Any]):
        try:
            await websocket.send_json(message)
        except Exception as e:
            # Closed sockets are cleaned up here rather than failing the publisher
            logger.debug(f"Dropping WebSocket after send failure: {e}")
            self.leave_all(websocket)


notifier = ConnectionManager()
