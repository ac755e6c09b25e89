"""
Chat Relay — Global Feed (in-memory, bounded)

Recent global-room messages, oldest first, capped at GLOBAL_FEED_CAPACITY
with FIFO eviction. Never persisted: a restart starts with an empty feed.

sender_nickname is captured at send time and is not rewritten when the
sender later renames; old messages keep their original attribution.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import structlog

from chatrelay.config import MessageKind, settings
from chatrelay.transport.hub import Hub

logger = structlog.get_logger(__name__)

NEW_MESSAGE_EVENT = "new_global_message"
DELETED_EVENT = "global_message_deleted"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class GlobalMessage:
    id: int
    sender_id: str
    sender_nickname: str
    body: str
    kind: MessageKind
    sent_at: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "sender_nickname": self.sender_nickname,
            "body": self.body,
            "kind": self.kind.value,
            "sent_at": self.sent_at.isoformat(),
        }


class GlobalFeed:
    """
    Process-scoped broadcast buffer.

    Ids are epoch milliseconds of the send time, bumped by one when two
    messages land in the same millisecond, so they strictly increase.
    """

    def __init__(
        self,
        hub: Hub,
        capacity: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._hub = hub
        self._capacity = capacity if capacity is not None else settings.GLOBAL_FEED_CAPACITY
        self._messages: deque[GlobalMessage] = deque(maxlen=self._capacity)
        self._clock = clock or _utcnow
        self._last_id = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def _next_id(self, sent_at: datetime) -> int:
        candidate = int(sent_at.timestamp() * 1000)
        if candidate <= self._last_id:
            candidate = self._last_id + 1
        self._last_id = candidate
        return candidate

    def append(
        self,
        sender_id: str,
        sender_nickname: str,
        body: str,
        kind: MessageKind = MessageKind.TEXT,
    ) -> GlobalMessage:
        """Add to the tail (evicting the head when full) and broadcast it."""
        sent_at = self._clock()
        message = GlobalMessage(
            id=self._next_id(sent_at),
            sender_id=sender_id,
            sender_nickname=sender_nickname,
            body=body,
            kind=MessageKind(kind),
            sent_at=sent_at,
        )
        if len(self._messages) == self._capacity:
            logger.debug("global_feed_evicted", message_id=self._messages[0].id)
        self._messages.append(message)

        self._hub.broadcast(NEW_MESSAGE_EVENT, {"message": message.to_payload()})
        logger.info("global_message_posted", message_id=message.id, sender_id=sender_id, kind=message.kind.value)
        return message

    def delete_if_owned(self, message_id: int, requester_id: str) -> bool:
        """
        Remove message_id only if requester_id sent it. There is no override
        for any other identity.

        Returns:
            True if a message was removed (and the deletion broadcast).
        """
        for message in self._messages:
            if message.id == message_id:
                if message.sender_id != requester_id:
                    logger.info(
                        "global_message_delete_refused",
                        message_id=message_id,
                        requester_id=requester_id,
                    )
                    return False
                self._messages.remove(message)
                self._hub.broadcast(DELETED_EVENT, {"message_id": message_id})
                logger.info("global_message_deleted", message_id=message_id, requester_id=requester_id)
                return True
        return False

    def snapshot(self) -> list[GlobalMessage]:
        """Current contents, oldest first."""
        return list(self._messages)

    def clear(self) -> None:
        self._messages.clear()

    def __len__(self) -> int:
        return len(self._messages)
