"""
Chat Relay — User Directory (durable)

Persisted identities, nickname uniqueness and the rename rate-limit ledger.

Nickname uniqueness is checked twice: an advisory SELECT before the write,
and the users.nickname unique constraint at commit. Two connections can pass
the pre-check concurrently (each store call is its own suspend point), so
every write site converts IntegrityError into NicknameTaken.

Rename rules (checked in this order):
1. The user must exist                              -> NotFound
2. The nickname must differ from the current one    -> NicknameUnchanged
3. Fewer than LIMIT renames inside the last WINDOW  -> RateLimited
4. Nobody else may hold the nickname                -> NicknameTaken
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

import structlog
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatrelay.config import settings
from chatrelay.db import run_store_call
from chatrelay.errors import (
    NicknameTaken,
    NicknameUnchanged,
    NotFound,
    RateLimited,
)
from chatrelay.models.direct_message import DirectMessage
from chatrelay.models.user import User

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Resolution:
    """Outcome of resolve_or_create."""

    user: User
    created: bool = False
    forced: bool = False                    # requested nickname was refused, stored one kept
    replaced_nickname: str | None = None    # stored nickname that the requested one replaced


class UserDirectory:
    """
    Durable user registry.

    Usage:
        directory = UserDirectory(session_factory)
        resolution = await directory.resolve_or_create("uuid-1", "alice")
        user = await directory.rename("uuid-1", "alicia")
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        window_days: int | None = None,
        change_limit: int | None = None,
        timeout: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._window_days = (
            window_days if window_days is not None else settings.NICKNAME_CHANGE_WINDOW_DAYS
        )
        self._change_limit = (
            change_limit if change_limit is not None else settings.NICKNAME_CHANGE_LIMIT
        )
        self._timeout = timeout
        self._clock = clock or _utcnow

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    @staticmethod
    async def _nickname_holder(
        session: AsyncSession,
        nickname: str,
        exclude_user_id: str | None = None,
    ) -> str | None:
        """Return the user_id currently holding nickname, if any."""
        stmt = select(User.user_id).where(User.nickname == nickname)
        if exclude_user_id is not None:
            stmt = stmt.where(User.user_id != exclude_user_id)
        return (await session.execute(stmt)).scalar_one_or_none()

    @staticmethod
    async def _commit_nickname_write(session: AsyncSession, nickname: str) -> None:
        """Commit a write that sets a nickname; the unique constraint is authoritative."""
        try:
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            logger.warning("directory_nickname_write_conflict", nickname=nickname)
            raise NicknameTaken(nickname) from exc

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def get(self, user_id: str) -> User | None:
        """Plain lookup by user_id."""

        async def _get() -> User | None:
            async with self._session_factory() as session:
                return await session.get(User, user_id)

        return await run_store_call("directory_get", _get(), self._timeout)

    async def resolve_or_create(self, user_id: str, requested_nickname: str) -> Resolution:
        """
        Bind a connecting client to its durable identity.

        Existing user: adopt the requested nickname unless another user holds
        it, in which case the stored nickname is kept and forced=True.
        last_seen is refreshed either way. Reconciliation is not a rename and
        does not touch the rate-limit ledger.

        New user: the requested nickname must be free, else NicknameTaken.
        """
        return await run_store_call(
            "directory_resolve_or_create",
            self._resolve_or_create(user_id, requested_nickname),
            self._timeout,
        )

    async def _resolve_or_create(self, user_id: str, requested_nickname: str) -> Resolution:
        now = self._clock()

        async with self._session_factory() as session:
            user = await session.get(User, user_id)

            if user is None:
                if await self._nickname_holder(session, requested_nickname) is not None:
                    logger.info("directory_register_rejected", user_id=user_id, nickname=requested_nickname)
                    raise NicknameTaken(requested_nickname)

                user = User(
                    user_id=user_id,
                    nickname=requested_nickname,
                    change_timestamps=[],
                    last_seen=now,
                    created_at=now,
                )
                session.add(user)
                try:
                    await self._commit_nickname_write(session, requested_nickname)
                except NicknameTaken:
                    # Same user_id registered concurrently from another tab
                    existing = await session.get(User, user_id)
                    if existing is None:
                        raise
                    if existing.nickname == requested_nickname:
                        return Resolution(user=existing)
                    user = existing
                else:
                    logger.info("directory_user_created", user_id=user_id, nickname=requested_nickname)
                    return Resolution(user=user, created=True)

            return await self._reconcile(session, user, requested_nickname, now)

    async def _reconcile(
        self,
        session: AsyncSession,
        user: User,
        requested_nickname: str,
        now: datetime,
    ) -> Resolution:
        """Adopt requested_nickname for an existing user unless someone else holds it."""
        user_id = user.user_id
        stored_nickname = user.nickname
        forced = False
        if requested_nickname != stored_nickname:
            holder = await self._nickname_holder(session, requested_nickname, user_id)
            if holder is None:
                user.nickname = requested_nickname
            else:
                forced = True
        user.last_seen = now

        try:
            await self._commit_nickname_write(session, user.nickname)
        except NicknameTaken:
            forced = True
            user = await session.get(User, user_id, populate_existing=True)
            user.last_seen = now
            await session.commit()

        if forced:
            logger.info(
                "directory_nickname_forced",
                user_id=user_id,
                requested=requested_nickname,
                kept=user.nickname,
            )
        replaced = stored_nickname if user.nickname != stored_nickname else None
        return Resolution(user=user, forced=forced, replaced_nickname=replaced)

    async def rename(self, user_id: str, new_nickname: str) -> User:
        """
        Change a user's nickname.

        On success previous_nickname holds the old name and the current time
        is appended to change_timestamps.

        Raises:
            NotFound, NicknameUnchanged, RateLimited, NicknameTaken
        """
        return await run_store_call(
            "directory_rename", self._rename(user_id, new_nickname), self._timeout
        )

    async def _rename(self, user_id: str, new_nickname: str) -> User:
        now = self._clock()
        cutoff = now - timedelta(days=self._window_days)

        async with self._session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise NotFound()
            if user.nickname == new_nickname:
                raise NicknameUnchanged()

            recent = user.changes_since(cutoff)
            if recent >= self._change_limit:
                logger.info(
                    "directory_rename_rate_limited",
                    user_id=user_id,
                    recent_changes=recent,
                    limit=self._change_limit,
                    window_days=self._window_days,
                )
                raise RateLimited(self._change_limit, self._window_days)

            if await self._nickname_holder(session, new_nickname, user_id) is not None:
                raise NicknameTaken(new_nickname)

            old_nickname = user.nickname
            user.previous_nickname = old_nickname
            user.nickname = new_nickname
            # Reassign so the JSON column is flagged dirty
            user.change_timestamps = [*(user.change_timestamps or []), now.isoformat()]
            await self._commit_nickname_write(session, new_nickname)

        logger.info("directory_user_renamed", user_id=user_id, old=old_nickname, new=new_nickname)
        return user

    async def find_by_nickname(self, nickname: str) -> User:
        """Raises NotFound if nobody holds nickname."""

        async def _find() -> User:
            async with self._session_factory() as session:
                result = await session.execute(select(User).where(User.nickname == nickname))
                user = result.scalar_one_or_none()
            if user is None:
                raise NotFound()
            return user

        return await run_store_call("directory_find_by_nickname", _find(), self._timeout)

    async def list_dm_partner_nicknames(self, user_id: str) -> set[str]:
        """Nicknames of everyone who exchanged at least one DM with user_id."""

        async def _list() -> set[str]:
            sent_to = select(DirectMessage.receiver_id).where(DirectMessage.sender_id == user_id)
            received_from = select(DirectMessage.sender_id).where(DirectMessage.receiver_id == user_id)
            stmt = select(User.nickname).where(
                or_(User.user_id.in_(sent_to), User.user_id.in_(received_from))
            )
            async with self._session_factory() as session:
                rows = await session.execute(stmt)
                return set(rows.scalars().all())

        return await run_store_call("directory_list_dm_partners", _list(), self._timeout)
