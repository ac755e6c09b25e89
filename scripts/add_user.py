"""
Chat Relay — Admin User Registration Script

Pre-registers a user id with a nickname (e.g. to reserve an operator's name
before launch). Goes through the same UserDirectory path as a connecting
client, so nickname uniqueness is enforced identically.

Usage:
    python scripts/add_user.py --nickname admin
    python scripts/add_user.py --nickname alice --user-id 0f8e6a3c-...
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
import uuid

# Resolve project root so this script can be run from any working directory
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from chatrelay.db import create_db_engine
from chatrelay.errors import ChatRelayError
from chatrelay.stores.users import UserDirectory


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Register a chat relay user (users row).",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/add_user.py --nickname admin
  python scripts/add_user.py --nickname alice --user-id 0f8e6a3c-1111-2222-3333-444455556666
""",
    )
    parser.add_argument(
        "--nickname",
        type=str,
        required=True,
        help="Display name to reserve (case-sensitive, must be unused).",
    )
    parser.add_argument(
        "--user-id",
        type=str,
        default=None,
        help="Client identifier to bind (default: a fresh UUID4).",
    )
    return parser.parse_args()


async def create_user(nickname: str, user_id: str | None) -> str:
    """Register user_id with nickname and return the user_id."""
    engine, session_factory = create_db_engine()
    directory = UserDirectory(session_factory)
    user_id = user_id or str(uuid.uuid4())
    try:
        resolution = await directory.resolve_or_create(user_id, nickname)
    finally:
        await engine.dispose()
    if resolution.forced:
        raise ChatRelayError(
            f"user {user_id} already exists as '{resolution.user.nickname}'; "
            f"'{nickname}' is held by someone else"
        )
    return resolution.user.user_id


async def main() -> None:
    args = parse_args()

    print(f"Registering user: nickname={args.nickname}")

    try:
        user_id = await create_user(nickname=args.nickname, user_id=args.user_id)
    except ChatRelayError as e:
        print(f"Failed to register user: {e.reason}", file=sys.stderr)
        sys.exit(1)

    print("User registered successfully.")
    print(f"  users.user_id  = {user_id}")
    print(f"  users.nickname = {args.nickname}")


if __name__ == "__main__":
    asyncio.run(main())
