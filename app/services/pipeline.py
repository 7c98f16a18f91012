"""
Dual-write message pipeline.

A new message goes out over the event hub first and is persisted second.
The two paths are not transactionally coupled: a message may be shown live
and then fail to persist. That failure is reported to the originating
connection (``message-failed``) so the client can restore its composer, and
optionally retracted room-wide when ``CHAT_RETRACT_ON_FAILURE`` is on.

Edits and deletes run the other way round: the store authorizes and applies
the change, and only then is it broadcast.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import Literal, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import ChatError, StoreWriteError, ValidationError
from app.models.base import isoformat, utcnow
from app.models.message import Message
from app.realtime.events import ServerEvent
from app.realtime.hub import EventHub
from app.services.attachments import FileMeta, validate_file_meta
from app.services.chat_store import (
    ChatStore,
    ChatUser,
    normalize_content,
    parse_id,
    validate_message_type,
)
from app.settings import settings

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]
T = TypeVar("T")


@dataclass
class DeliveryResult:
    """Outcome of one send through the pipeline."""

    status: Literal["persisted", "failed"]
    chat_room_id: str
    temp_id: str
    delivered: int = 0
    message: dict | None = None
    error: str | None = None
    error_status: int | None = None

    @property
    def ok(self) -> bool:
        return self.status == "persisted"

    @property
    def message_id(self) -> str | None:
        return self.message["id"] if self.message else None


@dataclass
class OutgoingMessage:
    """A validated message ready for both paths."""

    room_id: int
    content: str
    type: str
    temp_id: str
    reply_to_id: int | None = None
    file_meta: FileMeta | None = None
    timestamp: str = field(default_factory=lambda: isoformat(utcnow()))


def generate_temp_id() -> str:
    return f"tmp-{uuid.uuid4().hex}"


class MessagePipeline:
    """Coordinates hub broadcasts with chat store writes."""

    def __init__(
        self,
        hub: EventHub,
        session_factory: SessionFactory,
        retract_on_failure: bool | None = None,
    ):
        self.hub = hub
        self.session_factory = session_factory
        self.retract_on_failure = (
            settings.chat_retract_on_failure if retract_on_failure is None else retract_on_failure
        )

    async def _authorize(self, check: Callable[[ChatStore], Awaitable[T]]) -> T:
        """Run a read-only store check before anything is broadcast."""
        try:
            async with self.session_factory() as session:
                return await check(ChatStore(session))
        except ChatError:
            raise
        except Exception as e:
            logger.error("Chat store check failed before broadcast", exc_info=True)
            raise StoreWriteError("Chat store unavailable") from e

    async def _write(self, what: str, operation: Callable[[ChatStore], Awaitable[T]]) -> T:
        """Run a store write whose result is broadcast afterwards."""
        try:
            async with self.session_factory() as session:
                return await operation(ChatStore(session))
        except ChatError:
            raise
        except Exception as e:
            logger.error(f"Failed to persist {what}", exc_info=True)
            raise StoreWriteError(f"{what.capitalize()} could not be saved") from e

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def prepare(
        self,
        room_id,
        content: str | None,
        message_type: str | None = None,
        temp_id: str | None = None,
        reply_to=None,
        file_meta: FileMeta | None = None,
    ) -> OutgoingMessage:
        """Validate a send; nothing has been written when this raises.

        Raises:
            ValidationError: empty, oversized or malformed message
        """
        room_id = parse_id(room_id, "chatRoomId")
        content = normalize_content(content)
        if file_meta is not None:
            validate_file_meta(file_meta)
        if not content and file_meta is None:
            raise ValidationError("Message content or an attachment is required")
        if not message_type and file_meta is not None:
            message_type = file_meta.message_type
        message_type = validate_message_type(message_type)
        if not content:
            content = f"Shared a file: {file_meta.name}"
        reply_to_id = parse_id(reply_to, "replyTo") if reply_to else None
        return OutgoingMessage(
            room_id=room_id,
            content=content,
            type=message_type,
            temp_id=temp_id or generate_temp_id(),
            reply_to_id=reply_to_id,
            file_meta=file_meta,
        )

    @staticmethod
    def live_payload(outgoing: OutgoingMessage, sender: ChatUser) -> dict:
        """The ``new-message`` event body."""
        payload = {
            "chatRoomId": str(outgoing.room_id),
            "content": outgoing.content,
            "type": outgoing.type,
            "senderId": sender.user_id,
            "senderName": sender.user_name,
            "senderAvatar": sender.avatar,
            "replyTo": str(outgoing.reply_to_id) if outgoing.reply_to_id is not None else None,
            "timestamp": outgoing.timestamp,
            "tempId": outgoing.temp_id,
        }
        if outgoing.file_meta:
            payload["fileUrl"] = outgoing.file_meta.url
            payload["fileName"] = outgoing.file_meta.name
            payload["fileSize"] = outgoing.file_meta.size
        return payload

    async def send_message(
        self,
        room_id,
        content: str | None,
        message_type: str | None,
        sender: ChatUser,
        temp_id: str | None = None,
        reply_to=None,
        file_meta: FileMeta | None = None,
        origin_connection_id: str | None = None,
    ) -> DeliveryResult:
        """Broadcast a message, then persist it.

        Validation, participation and room policy errors raise before either
        path runs. Store failures after the broadcast do not raise; they come
        back as a failed DeliveryResult.
        """
        outgoing = self.prepare(room_id, content, message_type, temp_id, reply_to, file_meta)
        room_key = str(outgoing.room_id)
        await self._authorize(
            lambda store: store.authorize_message(
                outgoing.room_id, sender.user_id, outgoing.file_meta is not None
            )
        )

        delivered = self.hub.broadcast(
            room_key, ServerEvent.NEW_MESSAGE, self.live_payload(outgoing, sender)
        )

        try:
            async with self.session_factory() as session:
                store = ChatStore(session)
                message = await store.create_message(
                    outgoing.room_id,
                    sender,
                    outgoing.content,
                    message_type=outgoing.type,
                    file_meta=outgoing.file_meta,
                    reply_to_id=outgoing.reply_to_id,
                    temp_id=outgoing.temp_id,
                )
                data = (await store.serialize_messages([message]))[0]
        except ChatError as e:
            logger.warning(f"Message {outgoing.temp_id} rejected by store: {e.message}")
            return self._failed(outgoing, delivered, e.message, e.status_code, origin_connection_id)
        except Exception:
            logger.error(
                f"Failed to persist message {outgoing.temp_id} in room {room_key}", exc_info=True
            )
            return self._failed(
                outgoing,
                delivered,
                "Message could not be saved",
                StoreWriteError.status_code,
                origin_connection_id,
            )

        self.hub.send_to(
            origin_connection_id,
            ServerEvent.MESSAGE_PERSISTED,
            {
                "chatRoomId": room_key,
                "tempId": outgoing.temp_id,
                "messageId": data["id"],
                "createdAt": data["createdAt"],
            },
        )
        return DeliveryResult(
            status="persisted",
            chat_room_id=room_key,
            temp_id=outgoing.temp_id,
            delivered=delivered,
            message=data,
        )

    def _failed(
        self,
        outgoing: OutgoingMessage,
        delivered: int,
        error: str,
        error_status: int,
        origin_connection_id: str | None,
    ) -> DeliveryResult:
        room_key = str(outgoing.room_id)
        self.hub.send_to(
            origin_connection_id,
            ServerEvent.MESSAGE_FAILED,
            {"chatRoomId": room_key, "tempId": outgoing.temp_id, "error": error},
        )
        if self.retract_on_failure:
            self.hub.broadcast(
                room_key,
                ServerEvent.MESSAGE_RETRACTED,
                {"chatRoomId": room_key, "tempId": outgoing.temp_id},
            )
        return DeliveryResult(
            status="failed",
            chat_room_id=room_key,
            temp_id=outgoing.temp_id,
            delivered=delivered,
            error=error,
            error_status=error_status,
        )

    async def send_attachments(
        self,
        room_id,
        attachments: list[FileMeta],
        sender: ChatUser,
        temp_id: str | None = None,
        content: str | None = None,
        reply_to=None,
        origin_connection_id: str | None = None,
    ) -> list[DeliveryResult]:
        """Send each attachment as its own message.

        The optional caption goes with the first attachment only. All
        attachments are validated before any of them is sent.
        """
        if not attachments:
            raise ValidationError("At least one attachment is required")
        for file_meta in attachments:
            validate_file_meta(file_meta)

        base_temp_id = temp_id or generate_temp_id()
        results = []
        for index, file_meta in enumerate(attachments):
            results.append(
                await self.send_message(
                    room_id,
                    content if index == 0 else None,
                    None,
                    sender,
                    temp_id=f"{base_temp_id}-{index}",
                    reply_to=reply_to if index == 0 else None,
                    file_meta=file_meta,
                    origin_connection_id=origin_connection_id,
                )
            )
        return results

    # ------------------------------------------------------------------
    # Reactions and read markers: broadcast first, then persist
    # ------------------------------------------------------------------

    async def toggle_reaction(
        self,
        room_id,
        message_id,
        emoji: str,
        user: ChatUser,
    ) -> Message:
        """Broadcast a reaction toggle and persist it.

        The broadcast carries the toggle itself; clients apply the same
        add-or-remove rule the store does. Participation and the room's
        ``allow_reactions`` setting are checked before the broadcast.

        Raises:
            ChatError: the store rejected or failed the toggle
        """
        room_key = str(parse_id(room_id, "chatRoomId"))
        message_pk = parse_id(message_id, "messageId")
        emoji = (emoji or "").strip()
        if not emoji or len(emoji) > 50:
            raise ValidationError("Emoji is required")

        target = await self._authorize(lambda store: store.authorize_reaction(message_pk, user.user_id))
        if str(target.chat_room_id) != room_key:
            raise ValidationError(f"Message {message_pk} is not in chat room {room_key}")

        payload = {
            "messageId": str(message_pk),
            "tempId": target.temp_id,
            "emoji": emoji,
            "userId": user.user_id,
            "userName": user.user_name,
            "chatRoomId": room_key,
        }
        self.hub.broadcast(room_key, ServerEvent.MESSAGE_REACTION_ADDED, payload)

        try:
            async with self.session_factory() as session:
                message, _ = await ChatStore(session).toggle_reaction(
                    message_pk, user.user_id, user.user_name, emoji
                )
        except ChatError as e:
            logger.warning(f"Reaction on message {message_pk} rejected by store: {e.message}")
            self._undo_reaction(room_key, payload)
            raise
        except Exception as e:
            logger.error(f"Failed to persist reaction on message {message_pk}", exc_info=True)
            self._undo_reaction(room_key, payload)
            raise StoreWriteError("Reaction could not be saved") from e
        return message

    def _undo_reaction(self, room_key: str, payload: dict) -> None:
        if self.retract_on_failure:
            # Re-applying the same toggle undoes it on every client
            self.hub.broadcast(room_key, ServerEvent.MESSAGE_REACTION_ADDED, payload)

    async def mark_read(
        self,
        room_id,
        user: ChatUser,
        message_ids: list | None = None,
        origin_connection_id: str | None = None,
    ) -> list[str]:
        """Announce read markers to the room, then persist them."""
        room_pk = parse_id(room_id, "chatRoomId")
        ids = [parse_id(m, "messageId") for m in message_ids or []]
        self.hub.broadcast(
            str(room_pk),
            ServerEvent.MESSAGES_READ,
            {
                "chatRoomId": str(room_pk),
                "messageIds": [str(m) for m in ids],
                "userId": user.user_id,
                "userName": user.user_name,
                "timestamp": isoformat(utcnow()),
            },
            exclude_connection_id=origin_connection_id,
        )
        try:
            async with self.session_factory() as session:
                marked = await ChatStore(session).mark_read(room_pk, user.user_id, ids or None)
        except ChatError as e:
            logger.warning(f"Read markers for room {room_pk} rejected by store: {e.message}")
            raise
        except Exception as e:
            logger.error(f"Failed to persist read markers for room {room_pk}", exc_info=True)
            raise StoreWriteError("Read markers could not be saved") from e
        return [str(m) for m in marked]

    # ------------------------------------------------------------------
    # Edits and deletes: persist first, then broadcast
    #
    # Follow-up events carry the message's tempId as well as its id, so
    # subscribers that only saw the live copy can still find it.
    # ------------------------------------------------------------------

    async def delete_message(self, message_id, user: ChatUser) -> str:
        """Delete through the store, then tell the room. Returns the room id."""
        message_pk = parse_id(message_id, "messageId")
        message = await self._write(
            "message deletion", lambda store: store.delete_message(message_pk, user.user_id)
        )
        room_key = str(message.chat_room_id)
        self.hub.broadcast(
            room_key,
            ServerEvent.MESSAGE_DELETED,
            {
                "messageId": str(message_pk),
                "tempId": message.temp_id,
                "deletedBy": user.user_id,
                "chatRoomId": room_key,
            },
        )
        return room_key

    async def edit_message(self, message_id, content: str, user: ChatUser) -> dict:
        message_pk = parse_id(message_id, "messageId")

        async def edit(store: ChatStore) -> dict:
            message = await store.edit_message(message_pk, user.user_id, content)
            return (await store.serialize_messages([message]))[0]

        data = await self._write("message edit", edit)
        self.hub.broadcast(
            data["chatRoomId"],
            ServerEvent.MESSAGE_UPDATED,
            {
                "messageId": data["id"],
                "tempId": data["tempId"],
                "chatRoomId": data["chatRoomId"],
                "content": data["content"],
                "isEdited": data["isEdited"],
                "editedAt": data["editedAt"],
            },
        )
        return data

    async def remove_reaction(self, message_id, emoji: str, user: ChatUser) -> tuple[Message, bool]:
        """Remove a reaction through the store; announce it only if one was removed."""
        message_pk = parse_id(message_id, "messageId")
        emoji = (emoji or "").strip()
        message, removed = await self._write(
            "reaction removal",
            lambda store: store.remove_reaction(message_pk, user.user_id, emoji),
        )
        if removed:
            room_key = str(message.chat_room_id)
            # Same toggle event: clients drop the pair they already hold
            self.hub.broadcast(
                room_key,
                ServerEvent.MESSAGE_REACTION_ADDED,
                {
                    "messageId": str(message_pk),
                    "tempId": message.temp_id,
                    "emoji": emoji,
                    "userId": user.user_id,
                    "userName": user.user_name,
                    "chatRoomId": room_key,
                },
            )
        return message, removed
