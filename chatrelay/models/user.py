"""
Chat Relay — User Model

Durable identity record. The user_id is an opaque client-generated token
(kept in the browser's local storage); the nickname is the public,
case-sensitive, globally unique display name.

change_timestamps is the rename ledger: one ISO-8601 UTC timestamp is
appended per successful nickname change and the list is never truncated.
It is stored as JSON so the same model works on Postgres and SQLite.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, TIMESTAMP, String, func
from sqlalchemy.orm import Mapped, mapped_column

from chatrelay.models.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """
    Persisted chat identity.

    Nickname uniqueness is enforced by the unique constraint on
    users.nickname; the directory's pre-checks are advisory only.
    """

    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(
        String,
        primary_key=True,
        comment="Client-supplied stable identifier",
    )
    nickname: Mapped[str] = mapped_column(
        String,
        unique=True,
        nullable=False,
        comment="Current display name (case-sensitive, globally unique)",
    )
    previous_nickname: Mapped[str | None] = mapped_column(
        String,
        nullable=True,
        comment="Nickname held before the last rename",
    )
    change_timestamps: Mapped[list[str]] = mapped_column(
        JSON,
        default=list,
        nullable=False,
        comment="Rename ledger (ISO-8601 UTC), append-only",
    )
    last_seen: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        default=_utcnow,
        nullable=False,
        comment="Last successful connect",
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        comment="Account creation timestamp",
    )

    def changes_since(self, cutoff: datetime) -> int:
        """Count ledger entries strictly newer than cutoff."""
        return sum(
            1 for ts in self.change_timestamps or [] if datetime.fromisoformat(ts) > cutoff
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "nickname": self.nickname,
            "previous_nickname": self.previous_nickname,
            "change_timestamps": list(self.change_timestamps or []),
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
        }

    def __repr__(self) -> str:
        return f"<User user_id={self.user_id!r} nickname={self.nickname!r}>"
