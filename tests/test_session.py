"""
Tests for the Connection Session.

Covers the anonymous -> identified -> closed state machine, the error
policy (ack failures vs. silent drops), and the end-to-end chat scenarios:
global room, direct messages to offline users, renames and disconnects.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from structlog.testing import capture_logs

from chatrelay.config import SessionState
from chatrelay.errors import StoreFailure


@pytest.mark.asyncio
class TestIdentification:

    async def test_request_user_data_unknown_user_needs_setup(self, make_client) -> None:
        client = make_client()
        result = await client.request("request_user_data", {"user_id": "u1"})
        assert result == {"success": False, "needs_setup": True}
        assert client.session.state is SessionState.ANONYMOUS

    async def test_request_user_data_accepts_bare_id(self, make_client) -> None:
        await make_client().identify("u1", "alice")
        result = await make_client().request("request_user_data", "u1")
        assert result["success"] is True
        assert result["user"]["nickname"] == "alice"

    async def test_identify_joins_presence_and_replays_feed(self, make_client, relay) -> None:
        relay.feed.append("u0", "zed", "earlier")
        client = make_client()

        result = await client.identify("u1", "alice")

        assert result["success"] is True
        assert result["nickname_forced"] is False
        assert result["user"]["nickname"] == "alice"
        assert client.session.state is SessionState.IDENTIFIED
        assert relay.presence.list_ids() == ["u1"]
        assert client.connection.last("online_users_update") == {"user_ids": ["u1"]}
        history = client.connection.last("global_history")["messages"]
        assert [m["body"] for m in history] == ["earlier"]

    async def test_identify_with_taken_nickname_for_new_user(self, make_client, relay) -> None:
        await make_client().identify("u1", "alice")
        client = make_client()

        result = await client.identify("u2", "alice")

        assert result["success"] is False
        assert result["error"] == "nickname_taken"
        assert "alice" in result["message"]
        assert client.session.state is SessionState.ANONYMOUS
        assert relay.presence.list_ids() == ["u1"]

    async def test_reconnect_with_colliding_nickname_is_forced(self, make_client) -> None:
        first = make_client()
        await first.identify("u1", "alice")
        first.disconnect()
        await make_client().identify("u2", "bob")

        again = make_client()
        result = await again.identify("u1", "bob")

        assert result["success"] is True
        assert result["nickname_forced"] is True
        assert result["user"]["nickname"] == "alice"
        assert again.connection.last("nickname_forced") == {
            "nickname": "alice",
            "requested_nickname": "bob",
        }

    async def test_reconnect_adopting_new_nickname_announces_change(self, make_client) -> None:
        first = make_client()
        await first.identify("u1", "alice")
        first.disconnect()
        watcher = make_client()

        await make_client().identify("u1", "alicia")

        assert watcher.connection.last("nickname_changed") == {"old": "alice", "new": "alicia"}

    async def test_repeated_identify_is_idempotent(self, make_client, relay) -> None:
        client = make_client()
        await client.identify("u1", "alice")
        client.connection.clear()

        result = await client.identify("u1", "alice")

        assert result["success"] is True
        assert relay.presence.list_ids() == ["u1"]
        # No second join broadcast, no second replay
        assert client.connection.named("online_users_update") == []
        assert client.connection.named("global_history") == []

    async def test_repeated_identify_reconciles_nickname(self, make_client, relay) -> None:
        client = make_client()
        await client.identify("u1", "alice")

        await client.identify("u1", "alicia")

        assert relay.presence.get_nickname("u1") == "alicia"
        assert client.connection.last("nickname_changed") == {"old": "alice", "new": "alicia"}

    async def test_identify_as_different_user_rejected(self, make_client, relay) -> None:
        client = make_client()
        await client.identify("u1", "alice")

        result = await client.identify("u2", "bob")

        assert result["error"] == "validation_error"
        assert client.session.user_id == "u1"
        assert relay.presence.list_ids() == ["u1"]

    async def test_identify_missing_fields(self, make_client) -> None:
        result = await make_client().request("identify", {"user_id": "u1"})
        assert result["success"] is False
        assert result["error"] == "validation_error"
        assert "nickname" in result["message"]

    async def test_identify_result_discarded_after_close(self, make_client, relay) -> None:
        client = make_client()
        real = relay.directory.resolve_or_create

        async def close_midway(user_id, nickname):
            resolution = await real(user_id, nickname)
            client.disconnect()
            return resolution

        relay.directory.resolve_or_create = close_midway
        await client.send("identify", {"user_id": "u1", "nickname": "alice"})

        assert client.session.state is SessionState.CLOSED
        assert relay.presence.list_ids() == []


@pytest.mark.asyncio
class TestUnauthenticated:

    @pytest.mark.parametrize(
        "event, data",
        [
            ("get_dm_partners", None),
            ("change_nickname", {"new_nickname": "x"}),
            ("global_message", {"body": "hi"}),
            ("delete_global_message", {"message_id": 1, "sender_id": "u1"}),
            ("load_dms", {"target_nickname": "bob"}),
            ("send_dm", {"receiver_nickname": "bob", "body": "hi"}),
            ("delete_dm", {"message_id": 1}),
        ],
    )
    async def test_request_rejected_before_identify(self, make_client, event, data) -> None:
        result = await make_client().request(event, data)
        assert result["success"] is False
        assert result["error"] == "not_authenticated"

    async def test_fire_and_forget_dropped_before_identify(self, make_client, relay) -> None:
        watcher = make_client()
        await make_client().send("global_message", {"body": "hi"})

        assert len(relay.feed) == 0
        assert watcher.connection.named("new_global_message") == []

    async def test_unknown_event(self, make_client) -> None:
        result = await make_client().request("fly_to_moon", {})
        assert result["error"] == "validation_error"


@pytest.mark.asyncio
class TestGlobalRoomScenario:

    async def test_register_send_delete(self, make_client, relay) -> None:
        alice = make_client("alice")
        assert (await alice.identify("u1", "alice"))["success"] is True

        intruder = make_client("intruder")
        assert (await intruder.identify("u2", "alice"))["error"] == "nickname_taken"
        bystander = make_client("bystander")
        await bystander.identify("u3", "carol")

        await alice.send("global_message", {"body": "hi", "kind": "text"})

        for client in (alice, intruder, bystander):
            message = client.connection.last("new_global_message")["message"]
            assert message["sender_nickname"] == "alice"
            assert message["body"] == "hi"
        message_id = alice.connection.last("new_global_message")["message"]["id"]

        await alice.send("delete_global_message", {"message_id": message_id, "sender_id": "u1"})

        for client in (alice, intruder, bystander):
            assert client.connection.last("global_message_deleted") == {"message_id": message_id}
        assert len(relay.feed) == 0

    async def test_delete_with_forged_sender_id_is_ignored(self, make_client, relay) -> None:
        alice, mallory = make_client(), make_client()
        await alice.identify("u1", "alice")
        await mallory.identify("u2", "mallory")
        await alice.send("global_message", {"body": "mine"})
        message_id = relay.feed.snapshot()[0].id

        await mallory.send("delete_global_message", {"message_id": message_id, "sender_id": "u1"})
        result = await mallory.request(
            "delete_global_message", {"message_id": message_id, "sender_id": "u2"}
        )

        assert result["error"] == "not_found"
        assert len(relay.feed) == 1
        assert alice.connection.named("global_message_deleted") == []

    async def test_invalid_kind_dropped(self, make_client, relay) -> None:
        client = make_client()
        await client.identify("u1", "alice")
        await client.send("global_message", {"body": "hi", "kind": "video"})
        assert len(relay.feed) == 0

    async def test_nickname_snapshot_survives_rename(self, make_client, relay) -> None:
        client = make_client()
        await client.identify("u1", "alice")
        await client.send("global_message", {"body": "old name"})
        await client.request("change_nickname", {"new_nickname": "alicia"})
        await client.send("global_message", {"body": "new name"})

        assert [m.sender_nickname for m in relay.feed.snapshot()] == ["alice", "alicia"]


@pytest.mark.asyncio
class TestRename:

    async def test_rename_updates_directory_presence_and_everyone(self, make_client, relay) -> None:
        alice, bob = make_client(), make_client()
        await alice.identify("u1", "alice")
        await bob.identify("u2", "bob")
        bob.connection.clear()

        result = await alice.request("change_nickname", {"new_nickname": "alicia"})

        assert result["success"] is True
        assert result["user"]["previous_nickname"] == "alice"
        stored = await relay.directory.get("u1")
        assert stored.nickname == relay.presence.get_nickname("u1") == "alicia"
        assert bob.connection.last("nickname_changed") == {"old": "alice", "new": "alicia"}
        assert bob.connection.last("online_users_update") == {"user_ids": ["u1", "u2"]}

    async def test_rename_failures_are_user_visible(self, make_client) -> None:
        alice, bob = make_client(), make_client()
        await alice.identify("u1", "alice")
        await bob.identify("u2", "bob")

        assert (await alice.request("change_nickname", {"new_nickname": "alice"}))["error"] == "nickname_unchanged"
        assert (await alice.request("change_nickname", {"new_nickname": "bob"}))["error"] == "nickname_taken"

        await alice.request("change_nickname", {"new_nickname": "a1"})
        await alice.request("change_nickname", {"new_nickname": "a2"})
        limited = await alice.request("change_nickname", {"new_nickname": "a3"})
        assert limited["error"] == "rate_limited"
        assert limited["message"]


@pytest.mark.asyncio
class TestDirectMessageScenario:

    async def test_dm_to_offline_user_is_stored_and_loaded_later(self, make_client, relay) -> None:
        bob_first = make_client()
        await bob_first.identify("u2", "bob")
        bob_first.disconnect()

        alice = make_client()
        await alice.identify("u1", "alice")
        sent = await alice.request("send_dm", {"receiver_nickname": "bob", "body": "hey"})

        assert sent["success"] is True
        assert alice.connection.last("new_dm")["message"]["body"] == "hey"

        bob = make_client()
        await bob.identify("u2", "bob")
        thread = await bob.request("load_dms", {"target_nickname": "alice"})

        assert thread["success"] is True
        assert thread["partner"] == {"user_id": "u1", "nickname": "alice"}
        assert len(thread["messages"]) == 1
        message = thread["messages"][0]
        assert message["body"] == "hey"
        assert message["sender_nickname"] == "alice"
        assert message["receiver_nickname"] == "bob"

    async def test_dm_delivered_to_online_receiver_only(self, make_client) -> None:
        alice, bob, carol = make_client(), make_client(), make_client()
        await alice.identify("u1", "alice")
        await bob.identify("u2", "bob")
        await carol.identify("u3", "carol")

        await alice.send("send_dm", {"receiver_nickname": "bob", "body": "psst"})

        assert alice.connection.last("new_dm")["message"]["body"] == "psst"
        assert bob.connection.last("new_dm")["message"]["body"] == "psst"
        assert carol.connection.named("new_dm") == []

    async def test_dm_to_self_delivered_once(self, make_client) -> None:
        alice = make_client()
        await alice.identify("u1", "alice")
        await alice.send("send_dm", {"receiver_nickname": "alice", "body": "note to self"})
        assert len(alice.connection.named("new_dm")) == 1

    async def test_dm_to_unknown_nickname_emits_failure(self, make_client) -> None:
        alice = make_client()
        await alice.identify("u1", "alice")

        result = await alice.request("send_dm", {"receiver_nickname": "nobody", "body": "hi"})

        assert result["error"] == "recipient_not_found"
        failure = alice.connection.last("dm_send_failed")
        assert failure["receiver_nickname"] == "nobody"
        assert "nobody" in failure["reason"]

    async def test_disconnect_removes_from_roster_and_dm_still_persists(self, make_client, relay) -> None:
        u1 = make_client("u1-conn")
        await u1.identify("u1", "alice")
        bob = make_client("bob-conn")
        await bob.identify("u2", "bob")
        bob.connection.clear()

        u1.disconnect()

        assert bob.connection.last("online_users_update") == {"user_ids": ["u2"]}
        assert u1.session.state is SessionState.CLOSED
        u1.connection.clear()

        result = await bob.request("send_dm", {"receiver_nickname": "alice", "body": "still there?"})

        assert result["success"] is True
        assert u1.connection.named("new_dm") == []
        thread = await relay.dm_store.load_thread("u1", "u2")
        assert [m["body"] for m in thread] == ["still there?"]

    async def test_delete_dm_notifies_both_parties(self, make_client) -> None:
        alice, bob = make_client(), make_client()
        await alice.identify("u1", "alice")
        await bob.identify("u2", "bob")
        sent = await alice.request("send_dm", {"receiver_nickname": "bob", "body": "regret"})
        message_id = sent["message"]["id"]

        result = await bob.request("delete_dm", {"message_id": message_id})

        assert result == {"success": True}
        assert alice.connection.last("dm_deleted") == {"message_id": message_id}
        assert bob.connection.last("dm_deleted") == {"message_id": message_id}
        assert len(bob.connection.named("dm_deleted")) == 1

    async def test_delete_dm_by_outsider_is_not_found(self, make_client) -> None:
        alice, bob, eve = make_client(), make_client(), make_client()
        await alice.identify("u1", "alice")
        await bob.identify("u2", "bob")
        await eve.identify("u3", "eve")
        sent = await alice.request("send_dm", {"receiver_nickname": "bob", "body": "secret"})

        result = await eve.request("delete_dm", {"message_id": sent["message"]["id"]})

        assert result["error"] == "not_found"
        assert alice.connection.named("dm_deleted") == []

    async def test_get_dm_partners(self, make_client) -> None:
        alice, bob, carol = make_client(), make_client(), make_client()
        await alice.identify("u1", "alice")
        await bob.identify("u2", "bob")
        await carol.identify("u3", "carol")
        await alice.send("send_dm", {"receiver_nickname": "bob", "body": "1"})
        await carol.send("send_dm", {"receiver_nickname": "alice", "body": "2"})

        result = await alice.request("get_dm_partners")

        assert result == {"success": True, "partners": ["bob", "carol"]}

    async def test_load_dms_unknown_partner(self, make_client) -> None:
        alice = make_client()
        await alice.identify("u1", "alice")
        result = await alice.request("load_dms", {"target_nickname": "nobody"})
        assert result["error"] == "not_found"


@pytest.mark.asyncio
class TestStoreFailures:

    async def test_store_failure_is_reported_not_raised(self, make_client, relay) -> None:
        alice = make_client()
        await alice.identify("u1", "alice")
        relay.dm_store.load_thread = AsyncMock(side_effect=StoreFailure())
        relay.directory.find_by_nickname = AsyncMock(return_value=await relay.directory.get("u1"))

        result = await alice.request("load_dms", {"target_nickname": "alice"})

        assert result["success"] is False
        assert result["error"] == "store_failure"
        assert alice.session.state is SessionState.IDENTIFIED

    async def test_unexpected_error_does_not_escape(self, make_client, relay) -> None:
        alice = make_client()
        await alice.identify("u1", "alice")
        relay.directory.list_dm_partner_nicknames = AsyncMock(side_effect=RuntimeError("boom"))

        result = await alice.request("get_dm_partners")

        assert result["success"] is False
        assert alice.session.state is SessionState.IDENTIFIED


@pytest.mark.asyncio
class TestRejectionLogging:

    async def test_rejection_is_logged_and_acked(self, make_client) -> None:
        await make_client().identify("u1", "alice")
        client = make_client()

        with capture_logs() as logs:
            result = await client.identify("u2", "alice")

        assert result["error"] == "nickname_taken"
        rejected = [entry for entry in logs if entry["event"] == "session_event_rejected"]
        assert rejected[0]["event_name"] == "identify"
        assert rejected[0]["code"] == "nickname_taken"

    async def test_unknown_event_is_logged_and_acked(self, make_client) -> None:
        with capture_logs() as logs:
            result = await make_client().request("teleport", {})

        assert result["error"] == "validation_error"
        assert any(
            entry["event"] == "session_unknown_event" and entry["event_name"] == "teleport"
            for entry in logs
        )

    async def test_crash_is_logged_and_acked(self, make_client, relay) -> None:
        alice = make_client()
        await alice.identify("u1", "alice")
        relay.directory.list_dm_partner_nicknames = AsyncMock(side_effect=RuntimeError("boom"))

        with capture_logs() as logs:
            result = await alice.request("get_dm_partners")

        assert result["success"] is False
        crashed = [entry for entry in logs if entry["event"] == "session_event_crashed"]
        assert crashed[0]["event_name"] == "get_dm_partners"
        assert crashed[0]["error_type"] == "RuntimeError"


@pytest.mark.asyncio
class TestMultipleTabs:

    async def test_closing_newer_tab_keeps_user_online(self, make_client, relay) -> None:
        old_tab, new_tab, bob = make_client("tab-1"), make_client("tab-2"), make_client("bob")
        await old_tab.identify("u1", "alice")
        await new_tab.identify("u1", "alice")
        await bob.identify("u2", "bob")

        new_tab.disconnect()

        assert old_tab.session.state is SessionState.IDENTIFIED
        assert "u1" in relay.presence.list_ids()
        assert bob.connection.last("online_users_update") == {"user_ids": ["u1", "u2"]}

        await bob.send("send_dm", {"receiver_nickname": "alice", "body": "still here?"})
        assert old_tab.connection.last("new_dm")["message"]["body"] == "still here?"

    async def test_dm_reaches_every_open_tab(self, make_client) -> None:
        tab_1, tab_2, bob = make_client(), make_client(), make_client()
        await tab_1.identify("u1", "alice")
        await tab_2.identify("u1", "alice")
        await bob.identify("u2", "bob")

        await bob.send("send_dm", {"receiver_nickname": "alice", "body": "hi both"})

        assert len(tab_1.connection.named("new_dm")) == 1
        assert len(tab_2.connection.named("new_dm")) == 1
        assert len(bob.connection.named("new_dm")) == 1

    async def test_last_tab_closing_takes_user_offline(self, make_client, relay) -> None:
        tab_1, tab_2 = make_client(), make_client()
        await tab_1.identify("u1", "alice")
        await tab_2.identify("u1", "alice")

        tab_1.disconnect()
        tab_2.disconnect()

        assert relay.presence.list_ids() == []

    async def test_dm_delivered_by_user_id_when_receiver_renames_meanwhile(
        self, make_client, relay
    ) -> None:
        alice, bob = make_client(), make_client()
        await alice.identify("u1", "alice")
        await bob.identify("u2", "bob")
        real_send = relay.dm_store.send

        async def send_then_rename(*args):
            message = await real_send(*args)
            await bob.request("change_nickname", {"new_nickname": "robert"})
            return message

        relay.dm_store.send = send_then_rename
        await alice.send("send_dm", {"receiver_nickname": "bob", "body": "quick"})

        assert bob.connection.last("new_dm")["message"]["body"] == "quick"
