"""
Chat Relay — Direct-Message Store (durable)

Append-only pairwise message log. This module persists and queries; live
delivery to the sender's and receiver's connections is the session's job.

A thread is read with a single query ordered by (sent_at, id), so messages
with colliding timestamps still come back in one stable total order and
load_thread(a, b) == load_thread(b, a).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

import structlog
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from chatrelay.config import MessageKind
from chatrelay.db import run_store_call
from chatrelay.errors import NotFound, RecipientNotFound
from chatrelay.models.direct_message import DirectMessage
from chatrelay.models.user import User
from chatrelay.stores.users import UserDirectory

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DirectMessageStore:
    """
    Durable DM log.

    Usage:
        store = DirectMessageStore(session_factory, directory)
        message = await store.send("uuid-1", "bob", "hey", MessageKind.TEXT)
        thread = await store.load_thread("uuid-1", "uuid-2")
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        directory: UserDirectory,
        timeout: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._directory = directory
        self._timeout = timeout
        self._clock = clock or _utcnow

    async def send(
        self,
        sender_id: str,
        receiver_nickname: str,
        body: str,
        kind: MessageKind = MessageKind.TEXT,
    ) -> dict[str, Any]:
        """
        Persist a DM addressed by the receiver's current nickname.

        Returns:
            Wire payload with id, sent_at and both nicknames resolved.

        Raises:
            RecipientNotFound: no user holds receiver_nickname.
        """
        try:
            receiver = await self._directory.find_by_nickname(receiver_nickname)
        except NotFound:
            logger.info("dm_recipient_not_found", sender_id=sender_id, receiver_nickname=receiver_nickname)
            raise RecipientNotFound(receiver_nickname) from None

        async def _persist() -> dict[str, Any]:
            async with self._session_factory() as session:
                sender = await session.get(User, sender_id)
                if sender is None:
                    raise NotFound()
                message = DirectMessage(
                    sender_id=sender_id,
                    receiver_id=receiver.user_id,
                    body=body,
                    kind=MessageKind(kind).value,
                    sent_at=self._clock(),
                )
                session.add(message)
                await session.commit()
                return message.to_payload(sender.nickname, receiver.nickname)

        payload = await run_store_call("dm_send", _persist(), self._timeout)
        logger.info(
            "dm_stored",
            message_id=payload["id"],
            sender_id=sender_id,
            receiver_id=receiver.user_id,
            kind=payload["kind"],
        )
        return payload

    async def load_thread(self, user_a: str, user_b: str) -> list[dict[str, Any]]:
        """All messages between user_a and user_b, oldest first."""
        sender = aliased(User)
        receiver = aliased(User)
        stmt = (
            select(DirectMessage, sender.nickname, receiver.nickname)
            .join(sender, DirectMessage.sender_id == sender.user_id)
            .join(receiver, DirectMessage.receiver_id == receiver.user_id)
            .where(
                or_(
                    and_(DirectMessage.sender_id == user_a, DirectMessage.receiver_id == user_b),
                    and_(DirectMessage.sender_id == user_b, DirectMessage.receiver_id == user_a),
                )
            )
            .order_by(DirectMessage.sent_at.asc(), DirectMessage.id.asc())
        )

        async def _load() -> list[dict[str, Any]]:
            async with self._session_factory() as session:
                rows = await session.execute(stmt)
                return [
                    message.to_payload(sender_nickname, receiver_nickname)
                    for message, sender_nickname, receiver_nickname in rows.all()
                ]

        return await run_store_call("dm_load_thread", _load(), self._timeout)

    async def delete_owned(self, message_id: int, requester_id: str) -> dict[str, Any]:
        """
        Delete a DM if requester_id is its sender or receiver.

        A requester who is neither party gets NotFound, exactly as if the
        message did not exist.

        Returns:
            Payload of the deleted message (ids are needed for notification).
        """

        async def _delete() -> dict[str, Any]:
            async with self._session_factory() as session:
                message = await session.get(DirectMessage, message_id)
                if message is None or requester_id not in (message.sender_id, message.receiver_id):
                    raise NotFound()
                payload = message.to_payload()
                await session.delete(message)
                await session.commit()
                return payload

        payload = await run_store_call("dm_delete", _delete(), self._timeout)
        logger.info("dm_deleted", message_id=message_id, requester_id=requester_id)
        return payload
