"""
Chat Relay — Connection Hub

Process-scoped set of live connections, used for broadcast. Emitting never
suspends (frames are queued per connection), so a broadcast issued right
after an in-memory mutation lands in the same event-loop turn.
"""

from __future__ import annotations

from typing import Any, Protocol

import structlog

logger = structlog.get_logger(__name__)


class ConnectionHandle(Protocol):
    """Anything that can receive outbound events."""

    id: str

    def emit(self, event: str, data: dict[str, Any]) -> None: ...


class Hub:
    """All live connections, identified or not."""

    def __init__(self) -> None:
        self._connections: dict[str, ConnectionHandle] = {}

    def add(self, handle: ConnectionHandle) -> None:
        self._connections[handle.id] = handle
        logger.debug("hub_connection_added", connection_id=handle.id, total=len(self._connections))

    def discard(self, handle: ConnectionHandle) -> None:
        self._connections.pop(handle.id, None)
        logger.debug("hub_connection_removed", connection_id=handle.id, total=len(self._connections))

    def broadcast(self, event: str, data: dict[str, Any]) -> int:
        """Queue event on every live connection. Returns the fan-out count."""
        handles = list(self._connections.values())
        for handle in handles:
            handle.emit(event, data)
        return len(handles)

    def clear(self) -> None:
        self._connections.clear()

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, handle: object) -> bool:
        return getattr(handle, "id", None) in self._connections
