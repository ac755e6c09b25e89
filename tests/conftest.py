"""
Chat Relay — Shared pytest Fixtures & Configuration

Provides common fixtures for all test modules:
- File-backed aiosqlite database per test (separate connections per store
  call, like production, so uniqueness races are real)
- Controllable clock
- Fake connections that record emitted events
- Async test support via pytest-asyncio
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from chatrelay.db import create_db_engine
from chatrelay.models.base import Base
from chatrelay.relay import Relay
from chatrelay.session import ConnectionSession
from chatrelay.stores.users import UserDirectory


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

pytest_plugins = ("pytest_asyncio",)


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeConnection:
    """Connection handle that records (event, data) pairs."""

    _counter = 0

    def __init__(self, name: str | None = None) -> None:
        FakeConnection._counter += 1
        self.id = name or f"conn-{FakeConnection._counter}"
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, event: str, data: dict[str, Any]) -> None:
        self.events.append((event, data))

    def named(self, event: str) -> list[dict[str, Any]]:
        return [data for name, data in self.events if name == event]

    def last(self, event: str) -> dict[str, Any]:
        matches = self.named(event)
        assert matches, f"{self.id} never received {event!r}"
        return matches[-1]

    def clear(self) -> None:
        self.events.clear()


class AckRecorder:
    """Ack callback that stores every payload it is called with."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    def __call__(self, data: dict[str, Any]) -> None:
        self.calls.append(data)

    @property
    def payload(self) -> dict[str, Any]:
        assert len(self.calls) == 1, f"ack called {len(self.calls)} times"
        return self.calls[0]


class Client:
    """A fake connection plus its session, registered with the relay hub."""

    def __init__(self, relay: Relay, name: str | None = None) -> None:
        self.connection = FakeConnection(name)
        relay.hub.add(self.connection)
        self.session: ConnectionSession = relay.open_session(self.connection)
        self._relay = relay

    async def request(self, event: str, data: Any = None) -> dict[str, Any]:
        ack = AckRecorder()
        await self.session.dispatch(event, data, ack)
        return ack.payload

    async def send(self, event: str, data: Any = None) -> None:
        await self.session.dispatch(event, data)

    async def identify(self, user_id: str, nickname: str) -> dict[str, Any]:
        return await self.request("identify", {"user_id": user_id, "nickname": nickname})

    def disconnect(self) -> None:
        self._relay.hub.discard(self.connection)
        self.session.close()


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def db(tmp_path) -> AsyncGenerator[tuple[AsyncEngine, async_sessionmaker[AsyncSession]], None]:
    """
    Fresh SQLite database file per test, schema created from the ORM.

    Each store call opens its own connection, so concurrent writes contend
    on the real unique constraint.
    """
    engine, session_factory = create_db_engine(f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine, session_factory

    await engine.dispose()


@pytest.fixture
def session_factory(db) -> async_sessionmaker[AsyncSession]:
    return db[1]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def directory(session_factory, clock) -> UserDirectory:
    return UserDirectory(session_factory, window_days=14, change_limit=2, clock=clock)


@pytest.fixture
def relay(session_factory, directory) -> Relay:
    return Relay.create(session_factory, directory=directory)


@pytest.fixture
def make_client(relay):
    """Factory: make_client() -> Client connected to the shared relay."""

    def _make(name: str | None = None) -> Client:
        return Client(relay, name)

    return _make
