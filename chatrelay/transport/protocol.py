"""
Chat Relay — Wire Protocol

One JSON object per websocket text frame.

    client -> server   {"event": "send_dm", "data": {...}, "ack": 7}
    server -> client   {"event": "new_dm", "data": {...}}
    server -> client   {"event": "ack", "ack": 7, "data": {"success": true, ...}}

An inbound frame that carries an "ack" id gets exactly one ack frame back.
Event payloads are validated with the pydantic models below; a payload that
fails validation becomes a relay ValidationError.
"""

from __future__ import annotations

import json
from typing import Any, TypeVar

import pydantic
import structlog
from pydantic import BaseModel, ConfigDict, Field

from chatrelay.config import MessageKind, settings
from chatrelay.errors import ValidationError

logger = structlog.get_logger(__name__)

ACK_EVENT = "ack"

P = TypeVar("P", bound=BaseModel)


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class InboundFrame(BaseModel):
    """Client -> server envelope."""

    event: str = Field(..., min_length=1)
    data: Any = None
    ack: int | None = None


def parse_frame(raw: str | bytes) -> InboundFrame | None:
    """Decode one inbound frame; malformed frames are logged and dropped."""
    try:
        return InboundFrame.model_validate(json.loads(raw))
    except (json.JSONDecodeError, UnicodeDecodeError, pydantic.ValidationError) as exc:
        logger.warning("protocol_malformed_frame", error=str(exc), size=len(raw))
        return None


def encode_event(event: str, data: dict[str, Any]) -> str:
    return json.dumps({"event": event, "data": data}, ensure_ascii=False, default=str)


def encode_ack(ack_id: int, data: dict[str, Any]) -> str:
    return json.dumps({"event": ACK_EVENT, "ack": ack_id, "data": data}, ensure_ascii=False, default=str)


# ---------------------------------------------------------------------------
# Inbound payloads
# ---------------------------------------------------------------------------


class _Payload(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")


class UserDataRequest(_Payload):
    user_id: str = Field(..., min_length=1)


class IdentifyRequest(_Payload):
    user_id: str = Field(..., min_length=1)
    nickname: str = Field(..., min_length=1, max_length=settings.NICKNAME_MAX_LENGTH)


class ChangeNicknameRequest(_Payload):
    new_nickname: str = Field(..., min_length=1, max_length=settings.NICKNAME_MAX_LENGTH)


class GlobalMessageRequest(_Payload):
    body: str = Field(..., min_length=1, max_length=settings.MESSAGE_MAX_LENGTH)
    kind: MessageKind = MessageKind.TEXT


class DeleteGlobalMessageRequest(_Payload):
    message_id: int
    sender_id: str = Field(..., min_length=1)


class LoadThreadRequest(_Payload):
    target_nickname: str = Field(..., min_length=1)


class SendDirectMessageRequest(_Payload):
    receiver_nickname: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1, max_length=settings.MESSAGE_MAX_LENGTH)
    kind: MessageKind = MessageKind.TEXT


class DeleteDirectMessageRequest(_Payload):
    message_id: int


def validate_payload(model: type[P], data: Any) -> P:
    """Validate an event payload, raising the relay's ValidationError."""
    if isinstance(data, str) and model is UserDataRequest:
        # Older clients send the bare user id
        data = {"user_id": data}
    try:
        return model.model_validate(data if data is not None else {})
    except pydantic.ValidationError as exc:
        fields = ", ".join(
            ".".join(str(part) for part in err["loc"]) or "payload" for err in exc.errors()
        )
        raise ValidationError(f"Missing or invalid field(s): {fields}") from exc
