"""
Chat Relay — Presence Registry (in-memory)

Maps user_id -> (nickname, live connection handles). The key set is exactly
the set of connected, identified users: a user with several open tabs stays
present until the last of them leaves.

Every mutation is followed in the same turn by an online_users_update
broadcast of the full id list, so all clients converge on one roster.
Nickname -> handle resolution is a linear scan; the registry only ever
holds concurrent connections.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from chatrelay.transport.hub import ConnectionHandle, Hub

logger = structlog.get_logger(__name__)

ROSTER_EVENT = "online_users_update"


@dataclass
class PresenceEntry:
    nickname: str
    handles: list[ConnectionHandle] = field(default_factory=list)  # oldest first

    @property
    def handle(self) -> ConnectionHandle:
        """Most recently joined connection."""
        return self.handles[-1]


class PresenceRegistry:
    """
    Process-scoped roster. Created empty at startup, cleared at shutdown.

    Usage:
        presence = PresenceRegistry(hub)
        presence.join("uuid-1", "alice", connection)
        presence.leave("uuid-1", connection)
    """

    def __init__(self, hub: Hub) -> None:
        self._hub = hub
        self._entries: dict[str, PresenceEntry] = {}

    def _broadcast_roster(self) -> None:
        self._hub.broadcast(ROSTER_EVENT, {"user_ids": self.list_ids()})

    # -----------------------------------------------------------------------
    # Mutations (each one broadcasts)
    # -----------------------------------------------------------------------

    def join(self, user_id: str, nickname: str, handle: ConnectionHandle) -> None:
        """Admit handle for user_id; it becomes the newest of the user's connections."""
        entry = self._entries.get(user_id)
        if entry is None:
            entry = self._entries[user_id] = PresenceEntry(nickname=nickname)
        elif handle in entry.handles:
            entry.handles.remove(handle)
        else:
            logger.info(
                "presence_additional_connection",
                user_id=user_id,
                connection_id=handle.id,
                connections=len(entry.handles) + 1,
            )
        entry.nickname = nickname
        entry.handles.append(handle)
        logger.info("presence_joined", user_id=user_id, nickname=nickname, online=len(self._entries))
        self._broadcast_roster()

    def update_nickname(self, user_id: str, nickname: str) -> bool:
        """Returns False if user_id is not present."""
        entry = self._entries.get(user_id)
        if entry is None:
            return False
        entry.nickname = nickname
        self._broadcast_roster()
        return True

    def leave(self, user_id: str, handle: ConnectionHandle | None = None) -> bool:
        """
        Drop handle from user_id's connections, or all of them when handle is
        None. The user goes offline only when no connection is left.

        Returns:
            True if user_id was removed from the roster.
        """
        entry = self._entries.get(user_id)
        if entry is None:
            return False
        if handle is not None:
            if handle not in entry.handles:
                return False
            entry.handles.remove(handle)
            if entry.handles:
                logger.info(
                    "presence_connection_left",
                    user_id=user_id,
                    connection_id=handle.id,
                    remaining=len(entry.handles),
                )
                self._broadcast_roster()
                return False
        del self._entries[user_id]
        logger.info("presence_left", user_id=user_id, online=len(self._entries))
        self._broadcast_roster()
        return True

    def clear(self) -> None:
        self._entries.clear()

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    def list_ids(self) -> list[str]:
        return list(self._entries)

    def get_handle(self, user_id: str) -> ConnectionHandle | None:
        entry = self._entries.get(user_id)
        return entry.handle if entry else None

    def get_handles(self, user_id: str) -> list[ConnectionHandle]:
        entry = self._entries.get(user_id)
        return list(entry.handles) if entry else []

    def get_nickname(self, user_id: str) -> str | None:
        entry = self._entries.get(user_id)
        return entry.nickname if entry else None

    def find_handle_by_nickname(self, nickname: str) -> ConnectionHandle | None:
        """None when nobody online holds nickname (the user may still exist offline)."""
        for entry in self._entries.values():
            if entry.nickname == nickname:
                return entry.handle
        return None

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
