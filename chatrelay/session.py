"""
Chat Relay — Connection Session

Binds one live connection to at most one user identity and routes its
inbound events to the directory, presence registry, global feed and DM
store.

States:
    anonymous  --identify-->  identified  --disconnect-->  closed

Everything except request_user_data and identify requires the identified
state. Without it, fire-and-forget events are dropped and request/response
events are answered with not_authenticated.

Error policy: any ChatRelayError raised by a handler becomes an ack failure
when the client asked for one, and a log line otherwise. send_dm failures
also produce a dm_send_failed event. Nothing a handler raises closes the
connection.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Awaitable, Callable

import structlog

from chatrelay.config import SessionState
from chatrelay.errors import ChatRelayError, NotAuthenticated, NotFound, ValidationError
from chatrelay.transport.connection import AckCallback
from chatrelay.transport.hub import ConnectionHandle
from chatrelay.transport.protocol import (
    ChangeNicknameRequest,
    DeleteDirectMessageRequest,
    DeleteGlobalMessageRequest,
    GlobalMessageRequest,
    IdentifyRequest,
    LoadThreadRequest,
    SendDirectMessageRequest,
    UserDataRequest,
    validate_payload,
)

if TYPE_CHECKING:
    from chatrelay.relay import Relay

logger = structlog.get_logger(__name__)

Handler = Callable[[Any], Awaitable[dict[str, Any] | None]]

_OK: dict[str, Any] = {"success": True}


class ConnectionSession:
    """
    Per-connection state machine.

    Usage:
        session = relay.open_session(connection)
        await session.dispatch("identify", {"user_id": "uuid-1", "nickname": "alice"}, ack)
        session.close()
    """

    def __init__(self, connection: ConnectionHandle, relay: Relay) -> None:
        self._connection = connection
        self._relay = relay
        self.state = SessionState.ANONYMOUS
        self.user_id: str | None = None
        self._nickname: str | None = None

        self._handlers: dict[str, Handler] = {
            "request_user_data": self._on_request_user_data,
            "identify": self._on_identify,
            "get_dm_partners": self._on_get_dm_partners,
            "change_nickname": self._on_change_nickname,
            "global_message": self._on_global_message,
            "delete_global_message": self._on_delete_global_message,
            "load_dms": self._on_load_dms,
            "send_dm": self._on_send_dm,
            "delete_dm": self._on_delete_dm,
        }

    # -----------------------------------------------------------------------
    # Dispatch
    # -----------------------------------------------------------------------

    async def dispatch(self, event: str, data: Any, ack: AckCallback | None = None) -> None:
        """Run one inbound event to completion and answer its ack, if any."""
        handler = self._handlers.get(event)
        if handler is None:
            logger.warning("session_unknown_event", connection_id=self._connection.id, event_name=event)
            if ack is not None:
                ack(ValidationError(f"Unknown event '{event}'.").to_payload())
            return

        try:
            result = await handler(data)
        except ChatRelayError as exc:
            logger.info(
                "session_event_rejected",
                connection_id=self._connection.id,
                user_id=self.user_id,
                event_name=event,
                code=exc.code,
                reason=exc.reason,
            )
            if ack is not None:
                ack(exc.to_payload())
            return
        except Exception as exc:
            logger.error(
                "session_event_crashed",
                connection_id=self._connection.id,
                user_id=self.user_id,
                event_name=event,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            if ack is not None:
                ack(ChatRelayError().to_payload())
            return

        if ack is not None:
            ack(result if result is not None else _OK)

    def close(self) -> None:
        """Disconnect: release the presence entry this session owns."""
        if self.state is SessionState.IDENTIFIED and self.user_id is not None:
            self._relay.presence.leave(self.user_id, self._connection)
        self.state = SessionState.CLOSED
        logger.info("session_closed", connection_id=self._connection.id, user_id=self.user_id)

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _require_identity(self) -> str:
        if self.state is not SessionState.IDENTIFIED or self.user_id is None:
            raise NotAuthenticated()
        return self.user_id

    @property
    def nickname(self) -> str | None:
        """Live nickname from presence, falling back to the last one this session saw."""
        if self.user_id is not None:
            return self._relay.presence.get_nickname(self.user_id) or self._nickname
        return self._nickname

    def _party_handles(self, *user_ids: str) -> list[ConnectionHandle]:
        """This connection plus every live connection of user_ids, each once."""
        handles: dict[str, ConnectionHandle] = {self._connection.id: self._connection}
        for user_id in user_ids:
            for handle in self._relay.presence.get_handles(user_id):
                handles.setdefault(handle.id, handle)
        return list(handles.values())

    # -----------------------------------------------------------------------
    # Identity
    # -----------------------------------------------------------------------

    async def _on_request_user_data(self, data: Any) -> dict[str, Any]:
        request = validate_payload(UserDataRequest, data)
        user = await self._relay.directory.get(request.user_id)
        if user is None:
            return {"success": False, "needs_setup": True}
        return {"success": True, "user": user.to_payload()}

    async def _on_identify(self, data: Any) -> dict[str, Any] | None:
        request = validate_payload(IdentifyRequest, data)
        if self.state is SessionState.IDENTIFIED and request.user_id != self.user_id:
            raise ValidationError("This connection is already bound to another user.")
        if self.state is SessionState.CLOSED:
            return None

        resolution = await self._relay.directory.resolve_or_create(request.user_id, request.nickname)
        if self.state is SessionState.CLOSED:
            logger.info("session_identify_discarded", user_id=request.user_id)
            return None

        user = resolution.user
        presence = self._relay.presence

        if resolution.forced:
            self._connection.emit(
                "nickname_forced",
                {"nickname": user.nickname, "requested_nickname": request.nickname},
            )

        if self.state is SessionState.ANONYMOUS:
            self.user_id = user.user_id
            self._nickname = user.nickname
            self.state = SessionState.IDENTIFIED
            presence.join(user.user_id, user.nickname, self._connection)
            self._connection.emit(
                "global_history",
                {"messages": [message.to_payload() for message in self._relay.feed.snapshot()]},
            )
            logger.info(
                "session_identified",
                connection_id=self._connection.id,
                user_id=user.user_id,
                nickname=user.nickname,
                created=resolution.created,
            )
        else:
            self._nickname = user.nickname
            if self._connection not in presence.get_handles(user.user_id):
                presence.join(user.user_id, user.nickname, self._connection)
            elif presence.get_nickname(user.user_id) != user.nickname:
                presence.update_nickname(user.user_id, user.nickname)

        if resolution.replaced_nickname is not None:
            self._relay.hub.broadcast(
                "nickname_changed", {"old": resolution.replaced_nickname, "new": user.nickname}
            )

        return {"success": True, "user": user.to_payload(), "nickname_forced": resolution.forced}

    async def _on_change_nickname(self, data: Any) -> dict[str, Any]:
        user_id = self._require_identity()
        request = validate_payload(ChangeNicknameRequest, data)

        user = await self._relay.directory.rename(user_id, request.new_nickname)
        self._nickname = user.nickname
        self._relay.presence.update_nickname(user_id, user.nickname)
        self._relay.hub.broadcast(
            "nickname_changed", {"old": user.previous_nickname, "new": user.nickname}
        )
        return {"success": True, "user": user.to_payload()}

    async def _on_get_dm_partners(self, data: Any) -> dict[str, Any]:
        user_id = self._require_identity()
        partners = await self._relay.directory.list_dm_partner_nicknames(user_id)
        return {"success": True, "partners": sorted(partners)}

    # -----------------------------------------------------------------------
    # Global room
    # -----------------------------------------------------------------------

    async def _on_global_message(self, data: Any) -> dict[str, Any]:
        user_id = self._require_identity()
        request = validate_payload(GlobalMessageRequest, data)
        message = self._relay.feed.append(user_id, self.nickname or "", request.body, request.kind)
        return {"success": True, "message_id": message.id}

    async def _on_delete_global_message(self, data: Any) -> None:
        user_id = self._require_identity()
        request = validate_payload(DeleteGlobalMessageRequest, data)
        if request.sender_id != user_id:
            raise NotFound()
        if not self._relay.feed.delete_if_owned(request.message_id, user_id):
            raise NotFound()
        return None

    # -----------------------------------------------------------------------
    # Direct messages
    # -----------------------------------------------------------------------

    async def _on_load_dms(self, data: Any) -> dict[str, Any]:
        user_id = self._require_identity()
        request = validate_payload(LoadThreadRequest, data)
        partner = await self._relay.directory.find_by_nickname(request.target_nickname)
        messages = await self._relay.dm_store.load_thread(user_id, partner.user_id)
        return {
            "success": True,
            "partner": {"user_id": partner.user_id, "nickname": partner.nickname},
            "messages": messages,
        }

    async def _on_send_dm(self, data: Any) -> dict[str, Any]:
        user_id = self._require_identity()
        request = validate_payload(SendDirectMessageRequest, data)

        try:
            message = await self._relay.dm_store.send(
                user_id, request.receiver_nickname, request.body, request.kind
            )
        except ChatRelayError as exc:
            self._connection.emit(
                "dm_send_failed",
                {"reason": exc.reason, "receiver_nickname": request.receiver_nickname},
            )
            raise

        payload = {"message": message}
        for handle in self._party_handles(message["receiver_id"]):
            handle.emit("new_dm", payload)
        return {"success": True, "message": message}

    async def _on_delete_dm(self, data: Any) -> None:
        user_id = self._require_identity()
        request = validate_payload(DeleteDirectMessageRequest, data)
        deleted = await self._relay.dm_store.delete_owned(request.message_id, user_id)

        for handle in self._party_handles(deleted["sender_id"], deleted["receiver_id"]):
            handle.emit("dm_deleted", {"message_id": deleted["id"]})
        return None
