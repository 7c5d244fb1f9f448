"""
Websocket fan-out for notifications and order updates.

Each connection joins a room named after its user id and one named
`role:<role>`. Services call `emit` from worker threads (sync endpoints run
in the threadpool), so sends are scheduled onto the loop that owns the
socket.
"""

import asyncio
import threading
from collections import defaultdict
from typing import Any, Dict, Optional, Set

import structlog
from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from database import to_public_doc

logger = structlog.get_logger(__name__)


class NotificationGateway:
    def __init__(self):
        self._rooms: Dict[str, Set[WebSocket]] = defaultdict(set)
        self._loops: Dict[WebSocket, asyncio.AbstractEventLoop] = {}
        self._lock = threading.Lock()

    async def connect(self, websocket: WebSocket, user_id: Optional[str] = None, role: Optional[str] = None) -> None:
        await websocket.accept()
        with self._lock:
            self._loops[websocket] = asyncio.get_running_loop()
        if user_id:
            self.join(websocket, user_id)
            if role:
                self.join(websocket, f"role:{role}")
            logger.info("ws_connected", user_id=user_id, role=role)
        else:
            logger.info("ws_connected_guest")

    def join(self, websocket: WebSocket, room: str) -> None:
        with self._lock:
            self._rooms[room].add(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        with self._lock:
            for members in self._rooms.values():
                members.discard(websocket)
            self._loops.pop(websocket, None)
        logger.info("ws_disconnected")

    def room_size(self, room: str) -> int:
        with self._lock:
            return len(self._rooms.get(room, ()))

    def emit(self, room: str, event: str, payload: Any) -> int:
        with self._lock:
            targets = list(self._rooms.get(room, ()))
        message = {"event": event, "data": jsonable_encoder(to_public_doc(payload))}
        for websocket in targets:
            self._schedule(websocket, message)
        return len(targets)

    def send_notification_to_user(self, user_id: str, notification: Any) -> int:
        return self.emit(str(user_id), "notification", notification)

    def _schedule(self, websocket: WebSocket, message: dict) -> None:
        loop = self._loops.get(websocket)
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            loop.create_task(self._send(websocket, message))
        else:
            asyncio.run_coroutine_threadsafe(self._send(websocket, message), loop)

    async def _send(self, websocket: WebSocket, message: dict) -> None:
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.warning("ws_send_failed", error=str(e))
            self.disconnect(websocket)
