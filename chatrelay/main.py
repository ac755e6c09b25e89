"""
Chat Relay — Application Entrypoint

Initializes the async SQLAlchemy engine, configures structlog, builds the
process-scoped relay state and serves websockets until SIGINT/SIGTERM.

Run via:
    python -m chatrelay.main
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import structlog
from sqlalchemy import text

from chatrelay import __version__
from chatrelay.config import settings
from chatrelay.db import create_db_engine
from chatrelay.relay import Relay
from chatrelay.transport.server import RelayServer


# ---------------------------------------------------------------------------
# Structlog Configuration
# ---------------------------------------------------------------------------


def _configure_logging(log_level: str = "INFO") -> None:
    """
    Set up structured logging with JSON output.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
    """
    # Configure stdlib logging first (for websockets / SQLAlchemy)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Application Startup
# ---------------------------------------------------------------------------


async def main() -> None:
    """
    Application entrypoint.

    Execution order:
    1. Configure logging (structlog JSON)
    2. Create async database engine and session factory
    3. Verify database connection (health check)
    4. Build relay state and serve until a shutdown signal
    5. Drop ephemeral state and dispose the engine
    """
    _configure_logging(log_level=settings.LOG_LEVEL)
    logger = structlog.get_logger(__name__)

    logger.info("chatrelay_startup_begin", version=__version__)

    try:
        engine, session_factory = create_db_engine()
    except Exception as e:
        logger.error(
            "database_engine_creation_failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise

    # Health check: verify database connection
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        logger.info("database_health_check_passed")
    except Exception as e:
        logger.error(
            "database_health_check_failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        await engine.dispose()
        raise

    relay = Relay.create(session_factory)
    server = RelayServer(relay)
    stop = asyncio.Event()

    def handle_signal() -> None:
        """Called by SIGTERM/SIGINT."""
        logger.info("chatrelay_signal_received")
        stop.set()

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, handle_signal)
        loop.add_signal_handler(signal.SIGINT, handle_signal)
    except NotImplementedError:
        # Windows doesn't support add_signal_handler for all signals
        logger.warning("signal_handlers_not_supported_on_platform")

    logger.info(
        "chatrelay_startup_complete",
        host=settings.HOST,
        port=settings.PORT,
        nickname_change_limit=settings.NICKNAME_CHANGE_LIMIT,
        nickname_change_window_days=settings.NICKNAME_CHANGE_WINDOW_DAYS,
    )

    try:
        await server.serve(stop)
    except Exception as e:
        logger.error(
            "chatrelay_fatal_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
    finally:
        relay.shutdown()
        await engine.dispose()
        logger.info("chatrelay_shutdown_complete")


# ---------------------------------------------------------------------------
# CLI Entry
# ---------------------------------------------------------------------------


if __name__ == "__main__":
    asyncio.run(main())
