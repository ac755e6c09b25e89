"""
Chat Relay — Process-Scoped Relay State

Owns the stores shared by every connection: the connection hub, the
in-memory presence registry and global feed, and the durable directory and
DM store. Created once at startup and torn down at shutdown; the in-memory
parts are never persisted.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatrelay.session import ConnectionSession
from chatrelay.stores.direct_messages import DirectMessageStore
from chatrelay.stores.global_feed import GlobalFeed
from chatrelay.stores.presence import PresenceRegistry
from chatrelay.stores.users import UserDirectory
from chatrelay.transport.hub import ConnectionHandle, Hub

logger = structlog.get_logger(__name__)


@dataclass
class Relay:
    hub: Hub
    directory: UserDirectory
    dm_store: DirectMessageStore
    presence: PresenceRegistry
    feed: GlobalFeed

    @classmethod
    def create(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        directory: UserDirectory | None = None,
        feed_capacity: int | None = None,
    ) -> Relay:
        """Build empty in-memory stores around the given database session factory."""
        hub = Hub()
        directory = directory or UserDirectory(session_factory)
        relay = cls(
            hub=hub,
            directory=directory,
            dm_store=DirectMessageStore(session_factory, directory),
            presence=PresenceRegistry(hub),
            feed=GlobalFeed(hub, capacity=feed_capacity),
        )
        logger.info("relay_created", feed_capacity=relay.feed.capacity)
        return relay

    def open_session(self, connection: ConnectionHandle) -> ConnectionSession:
        return ConnectionSession(connection, self)

    def shutdown(self) -> None:
        """Drop all ephemeral state. Global messages are not persisted."""
        logger.info(
            "relay_shutdown",
            online=len(self.presence),
            connections=len(self.hub),
            feed_size=len(self.feed),
        )
        self.presence.clear()
        self.feed.clear()
        self.hub.clear()
