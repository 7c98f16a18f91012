"""
Dispatch of inbound WebSocket events to the hub and the message pipeline.

Errors never close the socket: they come back to the sender as an ``error``
event naming the offending event.
"""

import logging
from collections.abc import Awaitable, Callable

from pydantic import BaseModel
from pydantic import ValidationError as PayloadError

from app.exceptions import ChatError, PermissionDeniedError, UnidentifiedConnectionError
from app.realtime.events import (
    ClientEvent,
    DeleteMessagePayload,
    IdentifyPayload,
    MarkReadPayload,
    ReactionPayload,
    RoomPayload,
    SendMessagePayload,
    ServerEvent,
    StatusPayload,
)
from app.realtime.hub import Connection, EventHub
from app.services.attachments import FileMeta
from app.services.chat_store import ChatStore, ChatUser, parse_id
from app.services.pipeline import MessagePipeline, SessionFactory

logger = logging.getLogger(__name__)


def _room_payload(data) -> RoomPayload:
    # join-chat / leave-chat send the bare room id
    if isinstance(data, (str, int)):
        data = {"chatRoomId": str(data)}
    return RoomPayload.model_validate(data)


def _status_payload(data) -> StatusPayload:
    if isinstance(data, str):
        data = {"status": data}
    return StatusPayload.model_validate(data)


class ChatEventDispatcher:
    """Routes client events for one hub."""

    def __init__(self, hub: EventHub, pipeline: MessagePipeline, session_factory: SessionFactory):
        self.hub = hub
        self.pipeline = pipeline
        self.session_factory = session_factory
        self._handlers: dict[str, Callable[[Connection, object], Awaitable[None]]] = {
            ClientEvent.IDENTIFY_USER.value: self.on_identify,
            ClientEvent.JOIN_CHAT.value: self.on_join,
            ClientEvent.LEAVE_CHAT.value: self.on_leave,
            ClientEvent.SEND_MESSAGE.value: self.on_send_message,
            ClientEvent.TYPING_START.value: self.on_typing_start,
            ClientEvent.TYPING_STOP.value: self.on_typing_stop,
            ClientEvent.ADD_REACTION.value: self.on_add_reaction,
            ClientEvent.DELETE_MESSAGE.value: self.on_delete_message,
            ClientEvent.MARK_MESSAGES_READ.value: self.on_mark_read,
            ClientEvent.USER_STATUS_CHANGE.value: self.on_status_change,
            ClientEvent.PING.value: self.on_ping,
        }

    async def dispatch(self, connection_id: str, event, data) -> None:
        connection = self.hub.get_connection(connection_id)
        if connection is None:
            return
        handler = self._handlers.get(event)
        if handler is None:
            self._error(connection, event, f"Unknown event: {event}")
            return
        try:
            await handler(connection, data)
        except PayloadError as e:
            self._error(connection, event, f"Invalid payload: {e.errors()[0]['msg']}")
        except UnidentifiedConnectionError:
            self._error(connection, event, "User not identified")
        except ChatError as e:
            self._error(connection, event, e.message, e.status_code)

    def _error(self, connection: Connection, event, message: str, status: int = 400, **extra) -> None:
        self.hub.send_to(
            connection.connection_id,
            ServerEvent.ERROR,
            {"event": event, "message": message, "status": status, **extra},
        )

    @staticmethod
    def _user(connection: Connection) -> ChatUser:
        if not connection.is_identified:
            raise UnidentifiedConnectionError(connection.connection_id)
        return ChatUser(
            user_id=connection.user_id,
            user_name=connection.user_name,
            workspace_id=connection.workspace_id,
        )

    def _require_joined(self, connection: Connection, room_id: str) -> None:
        if not self.hub.is_subscribed(connection.connection_id, room_id):
            raise PermissionDeniedError(f"Join chat room {room_id} first")

    @staticmethod
    def _parse(model: type[BaseModel], data) -> BaseModel:
        return model.model_validate(data if data is not None else {})

    # ------------------------------------------------------------------

    async def on_identify(self, connection: Connection, data) -> None:
        payload = self._parse(IdentifyPayload, data)
        if connection.asserted_user_id and connection.asserted_user_id != payload.user_id:
            raise PermissionDeniedError("identify-user does not match the authenticated user")
        await self.hub.identify(
            connection.connection_id, payload.user_id, payload.user_name, payload.workspace_id
        )

    async def on_join(self, connection: Connection, data) -> None:
        payload = _room_payload(data)
        if not connection.is_identified:
            # The hub logs and ignores it
            await self.hub.join_room(connection.connection_id, payload.chat_room_id)
            return
        room_id = parse_id(payload.chat_room_id, "chatRoomId")
        async with self.session_factory() as session:
            allowed = await ChatStore(session).is_participant(room_id, connection.user_id)
        if not allowed:
            raise PermissionDeniedError(f"Not a participant of chat room {room_id}")
        await self.hub.join_room(connection.connection_id, str(room_id))

    async def on_leave(self, connection: Connection, data) -> None:
        payload = _room_payload(data)
        await self.hub.leave_room(connection.connection_id, payload.chat_room_id)

    async def on_send_message(self, connection: Connection, data) -> None:
        payload = self._parse(SendMessagePayload, data)
        user = self._user(connection)
        room_id = str(parse_id(payload.chat_room_id, "chatRoomId"))
        self._require_joined(connection, room_id)
        try:
            if payload.attachments:
                await self.pipeline.send_attachments(
                    room_id,
                    [FileMeta(a.file_url, a.file_name, a.file_size) for a in payload.attachments],
                    user,
                    temp_id=payload.temp_id,
                    content=payload.content,
                    reply_to=payload.reply_to,
                    origin_connection_id=connection.connection_id,
                )
                return
            file_meta = None
            if payload.file_url is not None or payload.file_name is not None:
                file_meta = FileMeta(payload.file_url or "", payload.file_name or "", payload.file_size)
            await self.pipeline.send_message(
                room_id,
                payload.content,
                payload.type,
                user,
                temp_id=payload.temp_id,
                reply_to=payload.reply_to,
                file_meta=file_meta,
                origin_connection_id=connection.connection_id,
            )
        except ChatError as e:
            # Rejected before anything was sent; the composer keeps its text
            self._error(
                connection,
                ClientEvent.SEND_MESSAGE.value,
                e.message,
                e.status_code,
                tempId=payload.temp_id,
                chatRoomId=room_id,
            )

    async def on_typing_start(self, connection: Connection, data) -> None:
        payload = _room_payload(data)
        await self.hub.start_typing(connection.connection_id, payload.chat_room_id)

    async def on_typing_stop(self, connection: Connection, data) -> None:
        payload = _room_payload(data)
        await self.hub.stop_typing(connection.connection_id, payload.chat_room_id)

    async def on_add_reaction(self, connection: Connection, data) -> None:
        payload = self._parse(ReactionPayload, data)
        user = self._user(connection)
        room_id = str(parse_id(payload.chat_room_id, "chatRoomId"))
        self._require_joined(connection, room_id)
        await self.pipeline.toggle_reaction(room_id, payload.message_id, payload.emoji, user)

    async def on_delete_message(self, connection: Connection, data) -> None:
        payload = self._parse(DeleteMessagePayload, data)
        user = self._user(connection)
        await self.pipeline.delete_message(payload.message_id, user)

    async def on_mark_read(self, connection: Connection, data) -> None:
        payload = self._parse(MarkReadPayload, data)
        user = self._user(connection)
        room_id = str(parse_id(payload.chat_room_id, "chatRoomId"))
        self._require_joined(connection, room_id)
        await self.pipeline.mark_read(
            room_id, user, payload.message_ids, origin_connection_id=connection.connection_id
        )

    async def on_status_change(self, connection: Connection, data) -> None:
        payload = _status_payload(data)
        await self.hub.set_status(connection.connection_id, payload.status)

    async def on_ping(self, connection: Connection, data) -> None:
        self.hub.send_to(connection.connection_id, ServerEvent.PONG, data)
