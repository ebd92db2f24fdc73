"""
Notification relay

Best-effort, process-local publish/subscribe over WebSockets. Rooms are
plain names (`order-<id>`, `shop-<id>`, `couriers`). Nothing is stored
or replayed: a client that misses an event re-polls the order API.
Publishing never raises into, or waits on behalf of, the caller.
"""

import asyncio
import logging
import threading
from typing import Any, Dict, Optional, Set

logger = logging.getLogger(__name__)

ORDER_CREATED = "new-order"
ORDER_STATUS_UPDATED = "order-status-updated"
ORDER_READY = "order-ready"
ORDER_ASSIGNED = "order-assigned"

COURIERS_ROOM = "couriers"


def order_room(order_id: str) -> str:
    return f"order-{order_id}"


def shop_room(shop_id: str) -> str:
    return f"shop-{shop_id}"


class NotificationRelay:
    def __init__(self):
        self._rooms: Dict[str, Set[Any]] = {}
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        # Sends scheduled on the running loop, held until they finish
        self._tasks: Set[asyncio.Task] = set()

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Loop that owns the socket connections."""
        self._loop = loop

    def join(self, room: str, connection: Any) -> None:
        with self._lock:
            self._rooms.setdefault(room, set()).add(connection)

    def leave(self, room: str, connection: Any) -> None:
        with self._lock:
            members = self._rooms.get(room)
            if members is not None:
                members.discard(connection)
                if not members:
                    del self._rooms[room]

    def disconnect(self, connection: Any) -> None:
        with self._lock:
            for room in [r for r, members in self._rooms.items() if connection in members]:
                self._rooms[room].discard(connection)
                if not self._rooms[room]:
                    del self._rooms[room]

    def members(self, room: str) -> Set[Any]:
        with self._lock:
            return set(self._rooms.get(room, ()))

    def publish(self, room: str, event: str, payload: Dict[str, Any]) -> int:
        """Schedule `event` for every member of `room`; returns how many were scheduled."""
        members = self.members(room)
        if not members:
            return 0
        message = {"event": event, "room": room, "data": payload}
        scheduled = 0
        for connection in members:
            if self._schedule(self._send(connection, message)):
                scheduled += 1
        return scheduled

    def _schedule(self, coro) -> bool:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            task = loop.create_task(coro)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return True
        if self._loop is not None and self._loop.is_running():
            asyncio.run_coroutine_threadsafe(coro, self._loop)
            return True
        coro.close()
        logger.debug("no event loop for relay, event dropped")
        return False

    async def _send(self, connection: Any, message: Dict[str, Any]) -> None:
        try:
            await connection.send_json(message)
        except Exception as e:
            logger.info(f"dropping relay connection after failed send: {e}")
            self.disconnect(connection)
