"""
Chat Relay — Direct Message Model

Append-only log of pairwise messages. Rows are inserted on send and deleted
by either participant; they are never updated. Deleting a user cascades to
every message they sent or received.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import TIMESTAMP, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from chatrelay.config import MessageKind
from chatrelay.models.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DirectMessage(Base):
    """Private message between two users."""

    __tablename__ = "direct_messages"
    __table_args__ = (
        Index("ix_direct_messages_pair", "sender_id", "receiver_id"),
        Index("ix_direct_messages_receiver", "receiver_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sender_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    receiver_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    body: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[str] = mapped_column(
        String,
        nullable=False,
        default=MessageKind.TEXT.value,
        comment="text | image | link",
    )
    sent_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        default=_utcnow,
        nullable=False,
    )

    def to_payload(
        self,
        sender_nickname: str | None = None,
        receiver_nickname: str | None = None,
    ) -> dict[str, Any]:
        """Wire representation; nicknames are resolved by the caller."""
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "sender_nickname": sender_nickname,
            "receiver_nickname": receiver_nickname,
            "body": self.body,
            "kind": self.kind,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<DirectMessage id={self.id!r} sender_id={self.sender_id!r} "
            f"receiver_id={self.receiver_id!r}>"
        )
