"""
Realtime event names and inbound payload models.

Frames travel as ``{"event": <name>, "data": <payload>}`` in both directions.
"""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ClientEvent(str, Enum):
    """Events a client sends to the hub."""
    IDENTIFY_USER = "identify-user"
    JOIN_CHAT = "join-chat"
    LEAVE_CHAT = "leave-chat"
    SEND_MESSAGE = "send-message"
    TYPING_START = "typing-start"
    TYPING_STOP = "typing-stop"
    ADD_REACTION = "add-reaction"
    DELETE_MESSAGE = "delete-message"
    MARK_MESSAGES_READ = "mark-messages-read"
    USER_STATUS_CHANGE = "user-status-change"
    PING = "ping"


class ServerEvent(str, Enum):
    """Events the hub sends to clients."""
    USER_IDENTIFIED = "user-identified"
    JOINED_CHAT = "joined-chat"
    LEFT_CHAT = "left-chat"
    USER_JOINED_ROOM = "user-joined-room"
    USER_LEFT_ROOM = "user-left-room"
    NEW_MESSAGE = "new-message"
    MESSAGE_PERSISTED = "message-persisted"
    MESSAGE_FAILED = "message-failed"
    MESSAGE_RETRACTED = "message-retracted"
    USER_TYPING = "user-typing"
    USER_STOPPED_TYPING = "user-stopped-typing"
    MESSAGE_REACTION_ADDED = "message-reaction-added"
    MESSAGE_DELETED = "message-deleted"
    MESSAGE_UPDATED = "message-updated"
    USER_STATUS_UPDATED = "user-status-updated"
    MESSAGES_READ = "messages-read"
    PONG = "pong"
    ERROR = "error"


PresenceStatus = Literal["online", "away", "offline"]


def frame(event: str | Enum, data: Any = None) -> dict:
    """Build a wire frame."""
    name = event.value if isinstance(event, Enum) else event
    return {"event": name, "data": data}


class EventPayload(BaseModel):
    """Base for inbound payloads: camelCase on the wire."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class IdentifyPayload(EventPayload):
    user_id: str = Field(alias="userId", min_length=1)
    user_name: str = Field(alias="userName", min_length=1)
    workspace_id: str | None = Field(default=None, alias="workspaceId")


class RoomPayload(EventPayload):
    chat_room_id: str = Field(alias="chatRoomId", min_length=1)


class AttachmentPayload(EventPayload):
    file_url: str = Field(alias="fileUrl")
    file_name: str = Field(alias="fileName")
    file_size: int | None = Field(default=None, alias="fileSize")


class SendMessagePayload(EventPayload):
    chat_room_id: str = Field(alias="chatRoomId", min_length=1)
    content: str = ""
    type: str | None = None
    temp_id: str | None = Field(default=None, alias="tempId", max_length=100)
    reply_to: str | None = Field(default=None, alias="replyTo")
    file_url: str | None = Field(default=None, alias="fileUrl")
    file_name: str | None = Field(default=None, alias="fileName")
    file_size: int | None = Field(default=None, alias="fileSize")
    # Several queued attachments, each sent as its own message
    attachments: list[AttachmentPayload] | None = None


class ReactionPayload(EventPayload):
    message_id: str = Field(alias="messageId", min_length=1)
    emoji: str = Field(min_length=1, max_length=50)
    chat_room_id: str = Field(alias="chatRoomId", min_length=1)


class DeleteMessagePayload(EventPayload):
    message_id: str = Field(alias="messageId", min_length=1)
    chat_room_id: str | None = Field(default=None, alias="chatRoomId")


class MarkReadPayload(EventPayload):
    chat_room_id: str = Field(alias="chatRoomId", min_length=1)
    message_ids: list[str] | None = Field(default=None, alias="messageIds")


class StatusPayload(EventPayload):
    status: PresenceStatus
