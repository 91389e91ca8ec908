"""In-process WebSocket connection registry.

One live connection slot per authenticated user: a new connection from the
same user replaces (and closes) the previous one. The registry is not durable;
it is rebuilt from fresh connections whenever the process restarts.
"""

import asyncio
import concurrent.futures
import logging
from typing import Any, Dict, List, Optional

from starlette.websockets import WebSocket, WebSocketDisconnect

from .base import Broadcaster, frame

logger = logging.getLogger(__name__)

# Close code sent to a connection replaced by a newer one of the same user
REPLACED_CLOSE_CODE = 4000

SEND_ERRORS = (asyncio.TimeoutError, RuntimeError, WebSocketDisconnect, OSError)


class ConnectionRegistry:
    """user id → WebSocket, owned by the API event loop."""

    def __init__(self, send_timeout_s: float = 5.0):
        self.send_timeout_s = send_timeout_s
        self._connections: Dict[str, WebSocket] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._connections

    def online_users(self) -> List[str]:
        return list(self._connections)

    async def register(self, user_id: str, websocket: WebSocket) -> None:
        previous = self._connections.get(user_id)
        self._connections[user_id] = websocket
        logger.info("User %s connected (%d online)", user_id, len(self._connections))

        if previous is not None and previous is not websocket:
            try:
                await previous.close(code=REPLACED_CLOSE_CODE)
            except SEND_ERRORS as e:
                logger.debug("Replaced connection of %s already closed: %s", user_id, e)

    async def unregister(self, user_id: str, websocket: WebSocket) -> bool:
        """Clear the slot only if it still holds ``websocket``."""
        if self._connections.get(user_id) is not websocket:
            return False
        del self._connections[user_id]
        logger.info("User %s disconnected (%d online)", user_id, len(self._connections))
        return True

    async def evict(self, user_id: str) -> bool:
        """Close the user's slot because a newer connection lives elsewhere."""
        websocket = self._connections.pop(user_id, None)
        if websocket is None:
            return False
        logger.info("User %s reconnected on another instance, closing local slot", user_id)
        try:
            await websocket.close(code=REPLACED_CLOSE_CODE)
        except SEND_ERRORS as e:
            logger.debug("Evicted connection of %s already closed: %s", user_id, e)
        return True

    async def send_to_user(self, user_id: str, event: str, payload: Dict[str, Any]) -> bool:
        websocket = self._connections.get(user_id)
        if websocket is None:
            logger.info("User %s is offline, %s not delivered", user_id, event)
            return False
        return await self._send(user_id, websocket, event, payload)

    async def broadcast(self, event: str, payload: Dict[str, Any]) -> int:
        targets = list(self._connections.items())
        results = await asyncio.gather(
            *(self._send(user_id, ws, event, payload) for user_id, ws in targets)
        )
        delivered = sum(1 for ok in results if ok)
        logger.info("Broadcast %s to %d/%d connection(s)", event, delivered, len(targets))
        return delivered

    async def _send(self, user_id: str, websocket: WebSocket, event: str, payload) -> bool:
        try:
            await asyncio.wait_for(
                websocket.send_json(frame(event, payload)), timeout=self.send_timeout_s
            )
            return True
        except SEND_ERRORS as e:
            logger.warning("Dropping %s for user %s: %s", event, user_id, e or type(e).__name__)
            await self.unregister(user_id, websocket)
            return False


class LocalBroadcaster(Broadcaster):
    """Broadcaster for worker threads running in the API process.

    Calls are marshalled onto the registry's event loop. Before ``bind`` (or
    in a process without an event loop) every event is dropped.
    """

    def __init__(self, registry: ConnectionRegistry, send_timeout_s: float = 5.0):
        self.registry = registry
        self.send_timeout_s = send_timeout_s
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def unbind(self) -> None:
        self._loop = None

    def send_to_user(self, user_id: str, event: str, payload: Dict[str, Any]) -> bool:
        return bool(self._run(self.registry.send_to_user(user_id, event, payload), event))

    def broadcast(self, event: str, payload: Dict[str, Any]) -> int:
        return int(self._run(self.registry.broadcast(event, payload), event) or 0)

    def _run(self, coro, event: str):
        loop = self._loop
        if loop is None or loop.is_closed():
            coro.close()
            logger.warning("No event loop bound, %s dropped", event)
            return None

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            # Called on the loop thread itself: schedule without waiting
            loop.create_task(coro)
            return None

        future = asyncio.run_coroutine_threadsafe(coro, loop)
        try:
            return future.result(timeout=self.send_timeout_s)
        except concurrent.futures.TimeoutError:
            future.cancel()
            logger.warning("Delivery of %s timed out", event)
            return None
