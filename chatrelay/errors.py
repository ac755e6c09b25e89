"""
Chat Relay — Error Taxonomy

Every failure a client can observe is a ChatRelayError subclass carrying a
stable machine-readable code and a human-readable reason. Sessions turn
these into ack failures (request/response events) or log-and-drop
(fire-and-forget events); none of them closes the connection.

Authorization failures are reported as NotFound so a requester cannot
probe for messages it does not own.
"""

from __future__ import annotations

from typing import Any


class ChatRelayError(Exception):
    """Base class for all user-visible relay failures."""

    code: str = "error"
    default_reason: str = "The request could not be processed."

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason or self.default_reason
        super().__init__(self.reason)

    def to_payload(self) -> dict[str, Any]:
        return {"success": False, "error": self.code, "message": self.reason}


class ValidationError(ChatRelayError):
    code = "validation_error"
    default_reason = "Malformed request."


class NotAuthenticated(ChatRelayError):
    code = "not_authenticated"
    default_reason = "Set up a nickname before using the chat."


class NicknameTaken(ChatRelayError):
    code = "nickname_taken"

    def __init__(self, nickname: str) -> None:
        self.nickname = nickname
        super().__init__(f"Nickname '{nickname}' is already in use.")


class NicknameUnchanged(ChatRelayError):
    code = "nickname_unchanged"
    default_reason = "The new nickname is the same as the current one."


class RateLimited(ChatRelayError):
    code = "rate_limited"

    def __init__(self, limit: int, window_days: int) -> None:
        self.limit = limit
        self.window_days = window_days
        super().__init__(
            f"Nicknames can be changed at most {limit} times every {window_days} days."
        )


class RecipientNotFound(ChatRelayError):
    code = "recipient_not_found"

    def __init__(self, nickname: str) -> None:
        self.nickname = nickname
        super().__init__(f"No user named '{nickname}'.")


class NotFound(ChatRelayError):
    code = "not_found"
    default_reason = "Not found."


class StoreFailure(ChatRelayError):
    code = "store_failure"
    default_reason = "A storage error occurred. Please try again shortly."
