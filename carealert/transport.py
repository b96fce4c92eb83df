"""
WebSocket Transport
===================
Adapts a Starlette/FastAPI WebSocket to the synchronous ``Connection``
interface used by the notification core.

Core code runs on worker threads (request thread pool, timer threads),
while the socket belongs to the event loop. ``send`` therefore hands the
write to the loop and waits for it, so a failed write surfaces as an
exception to the caller and the connection can be dropped as stale.
"""

from __future__ import annotations

import asyncio
import logging
import uuid

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class WebSocketConnection:
    """One client socket.

    Attributes:
        connection_id: Unique id for this session.
        user_id: Authenticated user bound to the socket.
    """

    def __init__(
        self,
        websocket: WebSocket,
        loop: asyncio.AbstractEventLoop,
        user_id: str,
        send_timeout: float = 10.0,
    ) -> None:
        self.websocket = websocket
        self.loop = loop
        self.user_id = user_id
        self.send_timeout = send_timeout
        self.connection_id = uuid.uuid4().hex

    def send(self, event: str, data: dict) -> None:
        """Write ``{"event": .., "data": ..}`` and wait for it to flush.

        Must not be called from the event loop thread itself.
        """
        if self._on_loop_thread():
            raise RuntimeError("WebSocketConnection.send called on the event loop thread")
        future = asyncio.run_coroutine_threadsafe(
            self.websocket.send_json({"event": event, "data": data}), self.loop
        )
        future.result(timeout=self.send_timeout)

    def close(self) -> None:
        if self.loop.is_closed():
            return
        asyncio.run_coroutine_threadsafe(self._close(), self.loop)

    async def _close(self) -> None:
        try:
            await self.websocket.close(code=1001)
        except RuntimeError as exc:
            logger.debug("Socket %s already closed: %s", self.connection_id, exc)

    def _on_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self.loop
        except RuntimeError:
            return False
