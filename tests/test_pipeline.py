"""Tests for the dual-write message pipeline."""

from contextlib import asynccontextmanager

import pytest

from app.exceptions import PermissionDeniedError, StoreWriteError, ValidationError
from app.realtime.handlers import ChatEventDispatcher
from app.realtime.hub import EventHub
from app.services.attachments import FileMeta
from app.services.chat_store import ChatStore
from app.services.pipeline import MessagePipeline, generate_temp_id
from conftest import connect, make_user

alice = make_user("alice", "ws1")
bob = make_user("bob", "ws1")


@asynccontextmanager
async def broken_session():
    raise RuntimeError("database unavailable")
    yield  # pragma: no cover


def failing_writes(maker, reads: int = 1):
    """Session factory whose first ``reads`` sessions work and the rest fail."""
    opened = {"count": 0}

    def factory():
        opened["count"] += 1
        return maker() if opened["count"] <= reads else broken_session()

    return factory


async def setup_room(maker) -> int:
    async with maker() as session:
        room = await ChatStore(session).create_room(
            "ws1", alice, "Launch", participants=["bob"]
        )
        return room.id


async def started_hub_with_room(room_id):
    hub = EventHub()
    await hub.start()
    sender = await connect(hub, "a", "alice", "ws1", rooms=[str(room_id)])
    peer = await connect(hub, "b", "bob", "ws1", rooms=[str(room_id)])
    return hub, sender, peer


class TestSendMessage:
    """Broadcast-then-persist sends."""

    def test_persisted_message_is_broadcast_and_acknowledged(self, run_db):
        async def scenario(maker):
            room_id = await setup_room(maker)
            hub, sender, peer = await started_hub_with_room(room_id)
            pipeline = MessagePipeline(hub, maker)
            result = await pipeline.send_message(
                room_id, "  hello  ", None, alice, temp_id="abc123", origin_connection_id="a"
            )
            await hub.flush()
            await hub.stop()
            async with maker() as session:
                stored, _ = await ChatStore(session).list_messages(room_id, "alice")
            return room_id, result, sender, peer, stored

        room_id, result, sender, peer, stored = run_db(scenario)
        assert result.ok
        assert result.delivered == 2
        assert result.message["content"] == "hello"
        assert result.message["tempId"] == "abc123"
        # Sender and peer both get the live message
        assert sender.of("new-message")[0]["tempId"] == "abc123"
        assert peer.of("new-message")[0]["content"] == "hello"
        ack = sender.of("message-persisted")
        assert ack == [{
            "chatRoomId": str(room_id),
            "tempId": "abc123",
            "messageId": result.message_id,
            "createdAt": result.message["createdAt"],
        }]
        assert peer.of("message-persisted") == []
        assert [m.content for m in stored] == ["hello"]

    def test_store_failure_after_broadcast_reports_to_sender(self, run_db):
        async def scenario(maker):
            room_id = await setup_room(maker)
            hub, sender, peer = await started_hub_with_room(room_id)
            pipeline = MessagePipeline(hub, failing_writes(maker), retract_on_failure=False)
            result = await pipeline.send_message(
                room_id, "lost", None, alice, temp_id="t1", origin_connection_id="a"
            )
            await hub.flush()
            await hub.stop()
            return result, sender, peer

        result, sender, peer = run_db(scenario)
        assert not result.ok
        assert result.error_status == 502
        # The live path already delivered; only the sender learns of the failure
        assert peer.events() == ["new-message"]
        assert sender.of("message-failed") == [
            {"chatRoomId": result.chat_room_id, "tempId": "t1", "error": "Message could not be saved"}
        ]
        assert sender.of("message-retracted") == []

    def test_failure_with_retraction_enabled(self, run_db):
        async def scenario(maker):
            room_id = await setup_room(maker)
            hub, sender, peer = await started_hub_with_room(room_id)
            pipeline = MessagePipeline(hub, failing_writes(maker), retract_on_failure=True)
            await pipeline.send_message(
                room_id, "lost", None, alice, temp_id="t2", origin_connection_id="a"
            )
            await hub.flush()
            await hub.stop()
            return sender, peer

        sender, peer = run_db(scenario)
        assert peer.events() == ["new-message", "message-retracted"]
        assert peer.of("message-retracted")[0]["tempId"] == "t2"
        assert "message-failed" in sender.events()

    def test_non_participant_is_rejected_before_broadcast(self, run_db):
        async def scenario(maker):
            room_id = await setup_room(maker)
            hub, sender, peer = await started_hub_with_room(room_id)
            pipeline = MessagePipeline(hub, maker)
            with pytest.raises(PermissionDeniedError):
                await pipeline.send_message(
                    room_id, "sneaky", None, make_user("mallory", "ws1"), temp_id="t3"
                )
            await hub.flush()
            await hub.stop()
            return peer

        assert run_db(scenario).frames == []

    def test_disabled_file_sharing_is_checked_before_broadcast(self, run_db):
        async def scenario(maker):
            room_id = await setup_room(maker)
            async with maker() as session:
                await ChatStore(session).update_room(room_id, "alice", allow_file_sharing=False)
            hub, sender, peer = await started_hub_with_room(room_id)
            pipeline = MessagePipeline(hub, maker)
            with pytest.raises(PermissionDeniedError, match="File sharing is disabled"):
                await pipeline.send_message(
                    room_id, "", None, alice, file_meta=FileMeta("https://x/secret.pdf", "secret.pdf")
                )
            # Plain text is still allowed
            result = await pipeline.send_message(room_id, "no files here", None, alice)
            await hub.flush()
            await hub.stop()
            return result, peer

        result, peer = run_db(scenario)
        assert result.ok
        assert [m["content"] for m in peer.of("new-message")] == ["no files here"]
        assert all("fileUrl" not in m for m in peer.of("new-message"))

    def test_store_unavailable_before_broadcast_raises(self, run_db):
        async def scenario(maker):
            room_id = await setup_room(maker)
            hub, sender, peer = await started_hub_with_room(room_id)
            pipeline = MessagePipeline(hub, broken_session)
            with pytest.raises(StoreWriteError):
                await pipeline.send_message(room_id, "hi", None, alice)
            await hub.flush()
            await hub.stop()
            return peer

        assert run_db(scenario).frames == []

    def test_validation_happens_before_broadcast(self, run_db):
        async def scenario(maker):
            room_id = await setup_room(maker)
            hub, sender, peer = await started_hub_with_room(room_id)
            pipeline = MessagePipeline(hub, maker)
            with pytest.raises(ValidationError):
                await pipeline.send_message(room_id, "   ", None, alice)
            with pytest.raises(ValidationError):
                await pipeline.send_message(room_id, "x", "carrier-pigeon", alice)
            with pytest.raises(ValidationError):
                await pipeline.send_message("not-a-room", "x", None, alice)
            await hub.flush()
            await hub.stop()
            return peer

        peer = run_db(scenario)
        assert peer.frames == []

    def test_generated_temp_id(self, run_db):
        async def scenario(maker):
            room_id = await setup_room(maker)
            hub = EventHub()
            await hub.start()
            result = await MessagePipeline(hub, maker).send_message(room_id, "hi", None, alice)
            await hub.stop()
            return result

        result = run_db(scenario)
        assert result.temp_id.startswith("tmp-")
        assert generate_temp_id() != generate_temp_id()


class TestAttachments:
    """File messages and multi-attachment sends."""

    def test_file_only_message_gets_placeholder_content(self, run_db):
        async def scenario(maker):
            room_id = await setup_room(maker)
            hub = EventHub()
            await hub.start()
            result = await MessagePipeline(hub, maker).send_message(
                room_id, "", None, alice, file_meta=FileMeta("https://files/x.png", "x.png", 10)
            )
            await hub.stop()
            return result

        result = run_db(scenario)
        assert result.ok
        assert result.message["content"] == "Shared a file: x.png"
        assert result.message["type"] == "image"
        assert result.message["fileUrl"] == "https://files/x.png"

    def test_each_attachment_is_its_own_message(self, run_db):
        async def scenario(maker):
            room_id = await setup_room(maker)
            hub, sender, peer = await started_hub_with_room(room_id)
            results = await MessagePipeline(hub, maker).send_attachments(
                room_id,
                [FileMeta("https://files/a.pdf", "a.pdf"), FileMeta("https://files/b.png", "b.png")],
                alice,
                temp_id="batch",
                content="see attached",
                origin_connection_id="a",
            )
            await hub.flush()
            await hub.stop()
            return results, peer

        results, peer = run_db(scenario)
        assert [r.temp_id for r in results] == ["batch-0", "batch-1"]
        assert [r.message["content"] for r in results] == ["see attached", "Shared a file: b.png"]
        assert [r.message["type"] for r in results] == ["file", "image"]
        assert len(peer.of("new-message")) == 2

    def test_disallowed_attachment_rejects_the_whole_batch(self, run_db):
        async def scenario(maker):
            room_id = await setup_room(maker)
            hub, sender, peer = await started_hub_with_room(room_id)
            with pytest.raises(ValidationError):
                await MessagePipeline(hub, maker).send_attachments(
                    room_id,
                    [FileMeta("https://files/a.pdf", "a.pdf"), FileMeta("https://files/run.exe", "run.exe")],
                    alice,
                )
            await hub.flush()
            await hub.stop()
            return peer

        assert run_db(scenario).frames == []


class TestReactionsAndReads:
    """Broadcast-then-persist reactions and read markers."""

    def test_reaction_toggle_broadcasts_to_whole_room(self, run_db):
        async def scenario(maker):
            room_id = await setup_room(maker)
            hub, sender, peer = await started_hub_with_room(room_id)
            pipeline = MessagePipeline(hub, maker)
            sent = await pipeline.send_message(room_id, "hi", None, alice)
            added = await pipeline.toggle_reaction(room_id, sent.message_id, "👍", bob)
            added_count = len(added.reactions)
            removed = await pipeline.toggle_reaction(room_id, sent.message_id, "👍", bob)
            await hub.flush()
            await hub.stop()
            return added_count, len(removed.reactions), sender, peer

        added_count, removed_count, sender, peer = run_db(scenario)
        assert (added_count, removed_count) == (1, 0)
        assert len(sender.of("message-reaction-added")) == 2
        assert len(peer.of("message-reaction-added")) == 2

    def test_reaction_store_failure_raises(self, run_db):
        async def scenario(maker):
            room_id = await setup_room(maker)
            hub, sender, peer = await started_hub_with_room(room_id)
            sent = await MessagePipeline(hub, maker).send_message(room_id, "hi", None, alice)
            await hub.flush()
            peer.frames.clear()
            pipeline = MessagePipeline(hub, failing_writes(maker), retract_on_failure=True)
            with pytest.raises(StoreWriteError):
                await pipeline.toggle_reaction(room_id, sent.message_id, "👍", bob)
            await hub.flush()
            await hub.stop()
            return peer

        peer = run_db(scenario)
        # Rebroadcasting the same toggle undoes it on clients
        assert peer.events() == ["message-reaction-added", "message-reaction-added"]

    def test_disabled_reactions_are_checked_before_broadcast(self, run_db):
        async def scenario(maker):
            room_id = await setup_room(maker)
            hub, sender, peer = await started_hub_with_room(room_id)
            pipeline = MessagePipeline(hub, maker)
            sent = await pipeline.send_message(room_id, "hi", None, alice)
            async with maker() as session:
                await ChatStore(session).update_room(room_id, "alice", allow_reactions=False)
            await hub.flush()
            peer.frames.clear()
            with pytest.raises(PermissionDeniedError, match="Reactions are disabled"):
                await pipeline.toggle_reaction(room_id, sent.message_id, "👍", bob)
            await hub.flush()
            await hub.stop()
            return peer

        assert run_db(scenario).frames == []

    def test_reaction_in_wrong_room_is_rejected(self, run_db):
        async def scenario(maker):
            room_id = await setup_room(maker)
            async with maker() as session:
                other = await ChatStore(session).create_room("ws1", alice, "Other", participants=["bob"])
            hub, sender, peer = await started_hub_with_room(other.id)
            pipeline = MessagePipeline(hub, maker)
            sent = await pipeline.send_message(room_id, "hi", None, alice)
            with pytest.raises(ValidationError):
                await pipeline.toggle_reaction(other.id, sent.message_id, "👍", bob)
            await hub.flush()
            await hub.stop()
            return peer

        assert run_db(scenario).frames == []

    def test_mark_read_excludes_origin(self, run_db):
        async def scenario(maker):
            room_id = await setup_room(maker)
            hub, sender, peer = await started_hub_with_room(room_id)
            pipeline = MessagePipeline(hub, maker)
            await pipeline.send_message(room_id, "one", None, alice)
            await pipeline.send_message(room_id, "two", None, alice)
            await hub.flush()
            sender.frames.clear()
            peer.frames.clear()
            marked = await pipeline.mark_read(room_id, bob, None, origin_connection_id="b")
            again = await pipeline.mark_read(room_id, bob, None, origin_connection_id="b")
            await hub.flush()
            await hub.stop()
            return marked, again, sender, peer

        marked, again, sender, peer = run_db(scenario)
        assert len(marked) == 2
        assert again == []
        assert peer.frames == []
        assert sender.of("messages-read")[0]["userId"] == "bob"


class TestEditAndDelete:
    """Store-first edits and deletes."""

    def test_edit_then_broadcast(self, run_db):
        async def scenario(maker):
            room_id = await setup_room(maker)
            hub, sender, peer = await started_hub_with_room(room_id)
            pipeline = MessagePipeline(hub, maker)
            sent = await pipeline.send_message(room_id, "helo", None, alice, temp_id="t-edit")
            data = await pipeline.edit_message(sent.message_id, "hello", alice)
            await hub.flush()
            await hub.stop()
            return data, peer

        data, peer = run_db(scenario)
        assert data["isEdited"] is True
        update = peer.of("message-updated")[0]
        assert update["content"] == "hello"
        assert update["messageId"] == data["id"]
        assert update["tempId"] == "t-edit"

    def test_rejected_delete_is_not_broadcast(self, run_db):
        async def scenario(maker):
            room_id = await setup_room(maker)
            hub, sender, peer = await started_hub_with_room(room_id)
            pipeline = MessagePipeline(hub, maker)
            sent = await pipeline.send_message(room_id, "mine", None, bob)
            await hub.flush()
            sender.frames.clear()
            # alice created the room and is its admin
            mine = await pipeline.send_message(room_id, "admin's", None, alice)
            await hub.flush()
            sender.frames.clear()
            with pytest.raises(PermissionDeniedError):
                await pipeline.delete_message(mine.message_id, bob)
            room_key = await pipeline.delete_message(sent.message_id, alice)
            await hub.flush()
            await hub.stop()
            return room_key, sender, sent

        room_key, sender, sent = run_db(scenario)
        assert sender.of("message-deleted") == [{
            "messageId": sent.message_id,
            "tempId": sent.temp_id,
            "deletedBy": "alice",
            "chatRoomId": room_key,
        }]

    def test_store_errors_on_edit_and_delete_become_store_write_errors(self, run_db):
        async def scenario(maker):
            room_id = await setup_room(maker)
            hub, sender, peer = await started_hub_with_room(room_id)
            sent = await MessagePipeline(hub, maker).send_message(room_id, "hi", None, alice)
            await hub.flush()
            peer.frames.clear()
            pipeline = MessagePipeline(hub, broken_session)
            with pytest.raises(StoreWriteError):
                await pipeline.edit_message(sent.message_id, "edited", alice)
            with pytest.raises(StoreWriteError):
                await pipeline.delete_message(sent.message_id, alice)
            with pytest.raises(StoreWriteError):
                await pipeline.remove_reaction(sent.message_id, "👍", alice)
            await hub.flush()
            await hub.stop()
            return peer

        assert run_db(scenario).frames == []

    def test_socket_delete_with_store_down_answers_with_error_event(self, run_db):
        async def scenario(maker):
            room_id = await setup_room(maker)
            hub, sender, peer = await started_hub_with_room(room_id)
            pipeline = MessagePipeline(hub, broken_session)
            dispatcher = ChatEventDispatcher(hub, pipeline, maker)
            await dispatcher.dispatch("a", "delete-message", {"messageId": "1"})
            await hub.flush()
            await hub.stop()
            return sender

        sender = run_db(scenario)
        assert sender.of("error") == [{
            "event": "delete-message",
            "message": "Message deletion could not be saved",
            "status": 502,
        }]
