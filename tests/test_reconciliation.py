"""Tests for client-side timeline reconciliation and event routing."""

import asyncio

import httpx

from app.client.history import HistoryClient
from app.client.indicators import TypingIndicators
from app.client.state import ChatClientState
from app.client.timeline import MessageTimeline, TimelineEntry
from app.realtime.hub import EventHub
from app.services.chat_store import ChatStore
from app.services.pipeline import MessagePipeline
from conftest import connect, make_user


def live(content, temp_id, sender="alice", room="7", timestamp="2026-03-01T10:00:00+00:00"):
    return {
        "chatRoomId": room,
        "content": content,
        "type": "text",
        "senderId": sender,
        "senderName": sender.title(),
        "timestamp": timestamp,
        "tempId": temp_id,
    }


def record(message_id, content, temp_id=None, sender="alice", room="7",
           created_at="2026-03-01T10:00:01+00:00", **extra):
    data = {
        "id": message_id,
        "chatRoomId": room,
        "content": content,
        "type": "text",
        "senderId": sender,
        "senderName": sender.title(),
        "tempId": temp_id,
        "createdAt": created_at,
        "reactions": [],
        "readBy": [{"userId": sender, "readAt": created_at}],
    }
    data.update(extra)
    return data


class TestMessageTimeline:
    """Live pushes merged with fetched history."""

    def test_live_then_fetched_is_one_entry(self):
        timeline = MessageTimeline("7")
        assert timeline.apply_live(live("hello", "abc123")) is True
        added = timeline.apply_page([record("m42", "hello", temp_id="abc123")])

        assert added == 0
        assert len(timeline) == 1
        entry = timeline.entries[0]
        assert entry.id == "m42"
        assert entry.temp_id == "abc123"
        assert not entry.provisional

    def test_duplicate_live_push_is_ignored(self):
        timeline = MessageTimeline("7")
        timeline.apply_live(live("hello", "abc123"))
        assert timeline.apply_live(live("hello", "abc123")) is False
        assert timeline.contents() == ["hello"]

    def test_fetched_then_live_is_one_entry(self):
        timeline = MessageTimeline("7")
        timeline.apply_page([record("m42", "hello", temp_id="abc123")])
        assert timeline.apply_live(live("hello", "abc123")) is False
        assert len(timeline) == 1

    def test_persisted_ack_promotes_provisional_entry(self):
        timeline = MessageTimeline("7")
        timeline.apply_live(live("hello", "abc123"))
        entry = timeline.apply_persisted(
            {"chatRoomId": "7", "tempId": "abc123", "messageId": 42, "createdAt": "2026-03-01T10:00:02Z"}
        )
        assert entry.id == "42"
        # A later fetch of the same record changes nothing
        assert timeline.apply_page([record("42", "hello", temp_id="abc123")]) == 0
        assert len(timeline) == 1

    def test_record_without_temp_id_correlates_within_window(self):
        timeline = MessageTimeline("7", correlation_window=30)
        timeline.apply_live(live("hello", "abc123", timestamp="2026-03-01T10:00:00Z"))
        timeline.apply_page([record("m42", "hello", created_at="2026-03-01T10:00:05Z")])
        assert len(timeline) == 1
        assert timeline.entries[0].id == "m42"

    def test_correlation_rejects_other_sender_or_old_record(self):
        timeline = MessageTimeline("7", correlation_window=30)
        timeline.apply_live(live("hello", "abc123", timestamp="2026-03-01T10:00:00Z"))
        added = timeline.apply_page([
            record("m1", "hello", sender="bob", created_at="2026-03-01T10:00:01Z"),
            record("m2", "hello", created_at="2026-03-01T09:00:00Z"),
        ])
        assert added == 2
        assert [e.key for e in timeline] == ["m1", "m2", "abc123"]

    def test_older_page_is_prepended_in_order(self):
        timeline = MessageTimeline("7")
        timeline.apply_page([record("3", "c"), record("4", "d")])
        timeline.apply_page([record("1", "a"), record("2", "b"), record("3", "c")])
        assert timeline.contents() == ["a", "b", "c", "d"]

    def test_failed_and_retracted_remove_provisional_only(self):
        timeline = MessageTimeline("7")
        timeline.apply_live(live("kept", "t1"))
        timeline.apply_live(live("lost", "t2"))
        timeline.apply_persisted({"tempId": "t1", "messageId": "1"})
        assert timeline.apply_retracted({"tempId": "t1"}) is None
        failed = timeline.apply_failed({"tempId": "t2", "error": "Message could not be saved"})
        assert failed.content == "lost"
        assert timeline.contents() == ["kept"]

    def test_reaction_toggle_by_temp_or_canonical_id(self):
        timeline = MessageTimeline("7")
        timeline.apply_live(live("hi", "t1"))
        timeline.apply_reaction({"messageId": "t1", "emoji": "👍", "userId": "bob"})
        timeline.apply_persisted({"tempId": "t1", "messageId": "9"})
        timeline.apply_reaction({"messageId": "9", "emoji": "🎉", "userId": "bob"})
        timeline.apply_reaction({"messageId": "9", "emoji": "👍", "userId": "bob"})
        assert [(r.emoji, r.user_id) for r in timeline.entries[0].reactions] == [("🎉", "bob")]

    def test_delete_update_and_read(self):
        timeline = MessageTimeline("7")
        timeline.apply_page([record("1", "a"), record("2", "b", sender="bob")])
        assert timeline.apply_updated({"messageId": "1", "content": "A", "isEdited": True})
        assert timeline.apply_read({"userId": "carol", "messageIds": ["1", "2"], "timestamp": "t"}) == 2
        assert timeline.apply_read({"userId": "bob", "messageIds": [], "timestamp": "t"}) == 1
        deleted = timeline.apply_deleted({"messageId": "2"})
        assert deleted.content == "b"
        entry = timeline.entries[0]
        assert entry.content == "A" and entry.is_edited
        assert set(entry.read_by) == {"alice", "carol", "bob"}

    def test_entry_match_rule(self):
        provisional = TimelineEntry("7", "x", "alice", temp_id="t1")
        canonical = TimelineEntry("7", "x", "alice", id="5", temp_id="t1")
        other = TimelineEntry("7", "x", "alice", id="6")
        by_id = TimelineEntry("7", "x", "alice", id="t1")
        assert provisional.matches(canonical)
        assert canonical.matches(provisional)
        assert provisional.matches(by_id)
        assert not canonical.matches(other)

    def test_follow_up_event_finds_provisional_entry_by_temp_id(self):
        timeline = MessageTimeline("7")
        timeline.apply_live(live("hello", "abc123"))
        entry = timeline.find_target({"messageId": "42", "tempId": "abc123"})
        assert entry is timeline.entries[0]
        assert entry.id == "42"
        assert timeline.find("42") is entry
        assert timeline.find_target({"messageId": "43", "tempId": "other"}) is None


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestTypingIndicators:
    """Deadline-based typing expiry."""

    def test_indicator_expires_without_stop_event(self):
        clock = FakeClock()
        typing = TypingIndicators(timeout=3.0, clock=clock)
        typing.start("7", "bob", "Bob")
        assert typing.names("7") == ["Bob"]
        clock.now += 2.9
        assert typing.names("7") == ["Bob"]
        clock.now += 0.2
        assert typing.names("7") == []

    def test_restart_extends_deadline(self):
        clock = FakeClock()
        typing = TypingIndicators(timeout=3.0, clock=clock)
        typing.start("7", "bob")
        clock.now += 2.0
        typing.start("7", "bob")
        clock.now += 2.0
        assert [t.user_id for t in typing.active("7")] == ["bob"]
        assert typing.stop("7", "bob") is True
        assert typing.stop("7", "bob") is False


class TestChatClientState:
    """Routing hub frames to room timelines."""

    def test_unsubscribed_room_events_are_discarded(self):
        state = ChatClientState("alice")
        state.handle_event("joined-chat", "7")
        assert state.handle_event("new-message", live("elsewhere", "t9", room="8")) is None
        assert "8" not in state.timelines
        assert state.handle_event("new-message", live("here", "t1")) is True
        assert state.timeline("7").contents() == ["here"]

    def test_active_room_only_mode(self):
        state = ChatClientState("alice", active_room_only=True)
        state.subscribe("7")
        state.set_active_room("8")
        assert state.handle_event("new-message", live("bg", "t1", room="7")) is None
        assert state.handle_event("new-message", live("fg", "t2", room="8")) is True

    def test_full_send_cycle_through_frames(self):
        state = ChatClientState("alice")
        state.handle_frame({"event": "user-identified", "data": {"success": True, "connectionId": "c"}})
        state.handle_frame({"event": "joined-chat", "data": "7"})
        state.handle_frame({"event": "new-message", "data": live("hello", "abc123")})
        state.handle_frame({
            "event": "message-persisted",
            "data": {"chatRoomId": "7", "tempId": "abc123", "messageId": "42", "createdAt": None},
        })
        state.timeline("7").apply_page([record("42", "hello", temp_id="abc123")])
        assert state.identified
        assert [e.id for e in state.timeline("7")] == ["42"]

    def test_failed_message_is_kept_for_the_composer(self):
        state = ChatClientState("alice")
        state.subscribe("7")
        state.handle_event("new-message", live("retry me", "t1"))
        state.handle_event("message-failed", {"chatRoomId": "7", "tempId": "t1", "error": "x"})
        assert state.timeline("7").contents() == []
        assert [e.content for e in state.failed] == ["retry me"]

    def test_new_message_clears_senders_typing(self):
        clock = FakeClock()
        state = ChatClientState("alice", clock=clock)
        state.subscribe("7")
        state.handle_event("user-typing", {"chatRoomId": "7", "userId": "bob", "userName": "Bob"})
        state.handle_event("user-typing", {"chatRoomId": "7", "userId": "alice", "userName": "Alice"})
        assert state.typing.names("7") == ["Bob"]
        state.handle_event("new-message", live("done", "t1", sender="bob"))
        assert state.typing.names("7") == []

    def test_leaving_drops_room_state(self):
        state = ChatClientState("alice")
        state.set_active_room("7")
        state.handle_event("new-message", live("hi", "t1"))
        state.handle_event("left-chat", "7")
        assert state.active_room_id is None
        assert "7" not in state.timelines
        assert state.handle_event("new-message", live("late", "t2")) is None

    def test_peer_applies_follow_ups_to_a_message_it_only_saw_live(self):
        state = ChatClientState("bob")
        state.handle_frame({"event": "joined-chat", "data": "7"})
        state.handle_frame({"event": "new-message", "data": live("hello", "abc123")})
        ids = {"chatRoomId": "7", "messageId": "42", "tempId": "abc123"}
        assert state.handle_frame({
            "event": "message-reaction-added",
            "data": {**ids, "emoji": "👍", "userId": "carol", "userName": "Carol"},
        }) is True
        assert state.handle_frame({
            "event": "message-updated",
            "data": {**ids, "content": "hello all", "isEdited": True, "editedAt": None},
        }) is True
        entry = state.timeline("7").entries[0]
        assert (entry.id, entry.content) == ("42", "hello all")
        assert [r.emoji for r in entry.reactions] == ["👍"]
        assert state.handle_frame({"event": "message-deleted", "data": {**ids, "deletedBy": "alice"}})
        assert state.timeline("7").contents() == []

    def test_peer_timeline_follows_hub_frames_end_to_end(self, run_db):
        alice = make_user("alice", "ws1")
        bob = make_user("bob", "ws1")

        async def scenario(maker):
            async with maker() as session:
                room = await ChatStore(session).create_room("ws1", alice, "Launch", participants=["bob"])
            room_key = str(room.id)
            hub = EventHub()
            await hub.start()
            await connect(hub, "a", "alice", "ws1", rooms=[room_key])
            peer = await connect(hub, "b", "bob", "ws1", rooms=[room_key])
            pipeline = MessagePipeline(hub, maker)
            sent = await pipeline.send_message(room.id, "hello", None, alice, temp_id="abc123")
            await pipeline.toggle_reaction(room.id, sent.message_id, "👍", bob)
            await pipeline.edit_message(sent.message_id, "hello all", alice)
            await hub.flush()
            before_delete = list(peer.frames)
            await pipeline.delete_message(sent.message_id, alice)
            await hub.flush()
            await hub.stop()
            return room_key, before_delete, peer.frames

        room_key, before_delete, frames = run_db(scenario)
        state = ChatClientState("bob")
        state.subscribe(room_key)
        for frame in before_delete:
            state.handle_frame(frame)
        entry = state.timeline(room_key).entries[0]
        assert entry.content == "hello all"
        assert [(r.emoji, r.user_id) for r in entry.reactions] == [("👍", "bob")]
        for frame in frames[len(before_delete):]:
            state.handle_frame(frame)
        assert state.timeline(room_key).contents() == []


class TestHistoryClient:
    """Paged history fetch merged into a timeline."""

    def test_load_page_merges_into_timeline(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = dict(request.url.params)
            seen["user"] = request.headers.get("X-User-Id")
            return httpx.Response(200, json={
                "messages": [record("41", "earlier"), record("42", "hello", temp_id="abc123")],
                "pagination": {"page": 1, "limit": 50, "total": 2, "hasMore": False},
            })

        async def scenario():
            timeline = MessageTimeline("7")
            timeline.apply_live(live("hello", "abc123"))
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
                client = HistoryClient("http://chat.test/", "alice", client=http)
                pagination = await client.load_page(timeline)
            return timeline, pagination

        timeline, pagination = asyncio.run(scenario())
        assert seen["params"] == {"chatRoomId": "7", "page": "1", "limit": "50"}
        assert seen["user"] == "alice"
        assert pagination["hasMore"] is False
        assert [e.id for e in timeline] == ["41", "42"]
