"""
Chat Relay — Websocket Connection Handle

Wraps one websocket with a bounded outbound queue. emit() only enqueues, so
callers never suspend while broadcasting; a writer task drains the queue in
order. A connection whose queue is full is a slow consumer: further frames
are dropped and logged rather than blocking everyone else's broadcast.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Callable

import structlog
from websockets.exceptions import ConnectionClosed

from chatrelay.config import settings
from chatrelay.transport.protocol import encode_ack, encode_event

logger = structlog.get_logger(__name__)

_CLOSE = object()

AckCallback = Callable[[dict[str, Any]], None]


class Connection:
    """
    Outbound side of one client connection.

    Usage:
        conn = Connection(websocket)
        writer = asyncio.create_task(conn.run_writer())
        conn.emit("online_users_update", {"user_ids": [...]})
        conn.close()
        await writer
    """

    def __init__(self, websocket: Any, queue_size: int | None = None) -> None:
        self.id = uuid.uuid4().hex
        self._websocket = websocket
        self._queue: asyncio.Queue[Any] = asyncio.Queue(
            maxsize=queue_size if queue_size is not None else settings.OUTBOUND_QUEUE_SIZE
        )
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _enqueue(self, frame: str) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("connection_outbound_queue_full", connection_id=self.id)

    def emit(self, event: str, data: dict[str, Any]) -> None:
        self._enqueue(encode_event(event, data))

    def make_ack(self, ack_id: int | None) -> AckCallback | None:
        """Build a callback that answers ack_id exactly once."""
        if ack_id is None:
            return None
        answered = False

        def _ack(data: dict[str, Any]) -> None:
            nonlocal answered
            if answered:
                logger.warning("connection_ack_repeated", connection_id=self.id, ack=ack_id)
                return
            answered = True
            self._enqueue(encode_ack(ack_id, data))

        return _ack

    def close(self) -> None:
        """Stop accepting frames; the writer exits after draining what is queued."""
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            # The server's drain timeout cancels the writer
            pass

    async def run_writer(self) -> None:
        while True:
            frame = await self._queue.get()
            if frame is _CLOSE:
                return
            try:
                await self._websocket.send(frame)
            except ConnectionClosed:
                logger.debug("connection_writer_peer_gone", connection_id=self.id)
                self._closed = True
                return
