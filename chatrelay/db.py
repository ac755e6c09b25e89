"""
Chat Relay — Database Engine & Store-Call Boundary

Creates the async SQLAlchemy engine and session factory, and provides
run_store_call(), the single boundary every durable-store operation passes
through: it bounds the round trip with STORE_TIMEOUT_SECONDS and converts
low-level SQLAlchemy failures into StoreFailure. There are no retries.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, TypeVar

import structlog
from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from chatrelay.config import settings
from chatrelay.errors import ChatRelayError, StoreFailure

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(
    database_url: str | None = None,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """
    Create SQLAlchemy async engine and session factory.

    Postgres (asyncpg) gets a bounded pool with pre-ping. SQLite (aiosqlite,
    used in tests) gets foreign keys switched on so DM cascades apply.

    Returns:
        (engine, session_factory) tuple.
    """
    url = database_url or settings.DATABASE_URL
    is_sqlite = url.startswith("sqlite")

    engine_kwargs: dict[str, Any] = {"echo": False}
    if not is_sqlite:
        engine_kwargs.update(pool_size=5, max_overflow=10, pool_pre_ping=True)

    engine = create_async_engine(url, **engine_kwargs)
    if is_sqlite:
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    logger.info("database_engine_ready", dialect=engine.dialect.name)
    return engine, session_factory


async def run_store_call(
    operation: str,
    call: Awaitable[T],
    timeout: float | None = None,
) -> T:
    """
    Await one durable-store round trip.

    Relay errors raised inside the call (NicknameTaken, NotFound, ...) pass
    through untouched. Timeouts and SQLAlchemy errors are logged once and
    surface as StoreFailure.

    Args:
        operation: Name used in log lines (e.g. "directory_rename").
        call: The coroutine performing the store work.
        timeout: Override STORE_TIMEOUT_SECONDS.
    """
    limit = timeout if timeout is not None else settings.STORE_TIMEOUT_SECONDS
    try:
        return await asyncio.wait_for(call, timeout=limit)
    except ChatRelayError:
        raise
    except asyncio.TimeoutError:
        logger.error("store_call_timeout", operation=operation, timeout_seconds=limit)
        raise StoreFailure() from None
    except SQLAlchemyError as exc:
        logger.error(
            "store_call_failed",
            operation=operation,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        raise StoreFailure() from exc
