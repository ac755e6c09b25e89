"""
Chat Relay — Websocket Server

Accepts websocket connections, wraps each in a Connection + session, and
feeds decoded frames to the session one at a time. Events from a single
connection are handled in arrival order; different connections interleave
on the event loop.
"""

from __future__ import annotations

import asyncio

import structlog
from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosedError

from chatrelay.config import settings
from chatrelay.relay import Relay
from chatrelay.transport.connection import Connection
from chatrelay.transport.protocol import parse_frame

logger = structlog.get_logger(__name__)


class RelayServer:
    """
    Usage:
        server = RelayServer(relay)
        await server.serve(stop_event)
    """

    def __init__(self, relay: Relay, host: str | None = None, port: int | None = None) -> None:
        self._relay = relay
        self._host = host or settings.HOST
        self._port = port if port is not None else settings.PORT

    async def handle_connection(self, websocket: ServerConnection) -> None:
        connection = Connection(websocket)
        self._relay.hub.add(connection)
        session = self._relay.open_session(connection)
        writer = asyncio.create_task(connection.run_writer())
        logger.info(
            "connection_opened",
            connection_id=connection.id,
            remote=str(getattr(websocket, "remote_address", None)),
        )

        try:
            async for raw in websocket:
                frame = parse_frame(raw)
                if frame is None:
                    continue
                await session.dispatch(frame.event, frame.data, connection.make_ack(frame.ack))
        except ConnectionClosedError as exc:
            logger.info("connection_closed_abnormally", connection_id=connection.id, error=str(exc))
        finally:
            self._relay.hub.discard(connection)
            session.close()
            connection.close()
            try:
                await asyncio.wait_for(writer, timeout=settings.WRITER_DRAIN_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                logger.debug("connection_writer_drain_timeout", connection_id=connection.id)
            logger.info("connection_closed", connection_id=connection.id)

    async def serve(self, stop: asyncio.Event) -> None:
        """Serve until stop is set."""
        async with serve(self.handle_connection, self._host, self._port) as server:
            logger.info("relay_server_listening", host=self._host, port=self._port)
            await stop.wait()
            server.close()
        logger.info("relay_server_stopped")

    def __repr__(self) -> str:
        return f"<RelayServer host={self._host!r} port={self._port!r}>"
