"""
Chat REST router: rooms, messages, reactions, read markers.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Header, Query, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from app.deps import CurrentUser, Pipeline, Store, resolve_workspace_id
from app.exceptions import ValidationError
from app.models.chat_room import ChatRoomType
from app.services.attachments import FileMeta, upload_config
from app.services.chat_store import parse_id
from app.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])


# -------------------------------------------------------------------------
# Request models (camelCase on the wire)
# -------------------------------------------------------------------------

class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RoomCreateRequest(CamelModel):
    name: str = ""
    description: str | None = Field(default=None, max_length=500)
    type: ChatRoomType = ChatRoomType.PRIVATE
    participants: list[str] = Field(default_factory=list)
    workspace_id: str | None = Field(default=None, alias="workspaceId")


class DirectRoomRequest(CamelModel):
    user_id: str = Field(alias="userId", min_length=1)
    workspace_id: str | None = Field(default=None, alias="workspaceId")


class RoomSettingsUpdate(CamelModel):
    allow_file_sharing: bool | None = Field(default=None, alias="allowFileSharing")
    allow_reactions: bool | None = Field(default=None, alias="allowReactions")
    retention_days: int | None = Field(default=None, alias="retentionDays")
    notifications: bool | None = None


class RoomUpdateRequest(CamelModel):
    name: str | None = None
    description: str | None = None
    is_archived: bool | None = Field(default=None, alias="isArchived")
    settings: RoomSettingsUpdate | None = None


class ParticipantsRequest(CamelModel):
    participants: list[str] = Field(min_length=1)


class InitDefaultsRequest(CamelModel):
    workspace_id: str | None = Field(default=None, alias="workspaceId")
    member_ids: list[str] = Field(default_factory=list, alias="memberIds")


class AttachmentRequest(CamelModel):
    file_url: str = Field(alias="fileUrl")
    file_name: str = Field(alias="fileName")
    file_size: int | None = Field(default=None, alias="fileSize")

    def to_file_meta(self) -> FileMeta:
        return FileMeta(url=self.file_url, name=self.file_name, size=self.file_size)


class MessageCreateRequest(CamelModel):
    chat_room_id: str = Field(alias="chatRoomId")
    content: str = ""
    type: str | None = None
    temp_id: str | None = Field(default=None, alias="tempId", max_length=100)
    reply_to: str | None = Field(default=None, alias="replyTo")
    file_url: str | None = Field(default=None, alias="fileUrl")
    file_name: str | None = Field(default=None, alias="fileName")
    file_size: int | None = Field(default=None, alias="fileSize")
    attachments: list[AttachmentRequest] | None = None

    def file_meta(self) -> FileMeta | None:
        if self.file_url is None and self.file_name is None:
            return None
        return FileMeta(url=self.file_url or "", name=self.file_name or "", size=self.file_size)


class MessageUpdateRequest(CamelModel):
    content: str


class ReactionRequest(CamelModel):
    emoji: str = Field(min_length=1, max_length=50)
    chat_room_id: str | None = Field(default=None, alias="chatRoomId")


class MarkReadRequest(CamelModel):
    chat_room_id: str = Field(alias="chatRoomId")
    message_ids: list[str] | None = Field(default=None, alias="messageIds")


ConnectionId = Annotated[str | None, Header(alias="X-Connection-Id")]


# -------------------------------------------------------------------------
# Rooms
# -------------------------------------------------------------------------

@router.get("/rooms")
async def list_rooms(
    user: CurrentUser,
    store: Store,
    workspace_id: Annotated[str | None, Query(alias="workspaceId")] = None,
    include_archived: Annotated[bool, Query(alias="includeArchived")] = False,
):
    """List the caller's rooms, most recently active first."""
    workspace_id = resolve_workspace_id(user, workspace_id)
    rooms = await store.list_rooms(workspace_id, user.user_id, include_archived)
    return {"chatRooms": [room.to_dict() for room in rooms]}


@router.post("/rooms", status_code=status.HTTP_201_CREATED)
async def create_room(body: RoomCreateRequest, user: CurrentUser, store: Store):
    workspace_id = resolve_workspace_id(user, body.workspace_id)
    room = await store.create_room(
        workspace_id,
        user,
        body.name,
        room_type=body.type.value,
        description=body.description,
        participants=body.participants,
    )
    return {"chatRoom": room.to_dict()}


@router.post("/rooms/direct")
async def open_direct_room(
    body: DirectRoomRequest, user: CurrentUser, store: Store, response: Response
):
    """Get or create the direct room between the caller and another user."""
    workspace_id = resolve_workspace_id(user, body.workspace_id)
    room, created = await store.get_or_create_direct_room(workspace_id, user, body.user_id)
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return {"chatRoom": room.to_dict(), "created": created}


@router.get("/rooms/{room_id}")
async def get_room(room_id: int, user: CurrentUser, store: Store):
    room = await store.get_room(room_id, user.user_id)
    return {"chatRoom": room.to_dict()}


@router.put("/rooms/{room_id}")
async def update_room(room_id: int, body: RoomUpdateRequest, user: CurrentUser, store: Store):
    """Admin-only update of name, description, archive flag and settings."""
    room_settings = body.settings or RoomSettingsUpdate()
    room = await store.update_room(
        room_id,
        user.user_id,
        name=body.name,
        description=body.description,
        is_archived=body.is_archived,
        allow_file_sharing=room_settings.allow_file_sharing,
        allow_reactions=room_settings.allow_reactions,
        retention_days=room_settings.retention_days,
        notifications=room_settings.notifications,
    )
    return {"chatRoom": room.to_dict()}


@router.delete("/rooms/{room_id}")
async def delete_room(room_id: int, user: CurrentUser, store: Store):
    await store.delete_room(room_id, user.user_id)
    return {"message": "Chat room deleted successfully"}


@router.post("/rooms/{room_id}/participants")
async def add_participants(
    room_id: int, body: ParticipantsRequest, user: CurrentUser, store: Store
):
    room = await store.add_participants(room_id, user.user_id, body.participants)
    return {"chatRoom": room.to_dict()}


@router.delete("/rooms/{room_id}/participants/{participant_id}")
async def remove_participant(room_id: int, participant_id: str, user: CurrentUser, store: Store):
    room = await store.remove_participant(room_id, user.user_id, participant_id)
    return {"chatRoom": room.to_dict()}


@router.post("/init-defaults")
async def init_defaults(body: InitDefaultsRequest, user: CurrentUser, store: Store):
    """Seed the General room and add the listed workspace members to it."""
    workspace_id = resolve_workspace_id(user, body.workspace_id)
    general = await store.create_default_rooms(workspace_id, user.user_id)
    for member_id in dict.fromkeys(body.member_ids):
        await store.add_user_to_default_rooms(workspace_id, member_id)
    general = await store.get_room(general.id)
    return {
        "success": True,
        "message": "Default chat rooms initialized successfully",
        "generalRoom": {
            "id": str(general.id),
            "name": general.name,
            "type": general.type,
            "participantCount": len(general.participants),
        },
    }


# -------------------------------------------------------------------------
# Messages
# -------------------------------------------------------------------------

@router.get("/messages")
async def list_messages(
    user: CurrentUser,
    store: Store,
    chat_room_id: Annotated[str | None, Query(alias="chatRoomId")] = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int | None, Query(ge=1)] = None,
):
    """One page of history: newest page first, oldest-first within the page."""
    if not chat_room_id:
        raise ValidationError("Chat room ID is required")
    room_id = parse_id(chat_room_id, "chatRoomId")
    messages, pagination = await store.list_messages(
        room_id, user.user_id, page=page, limit=limit or settings.chat_default_page_size
    )
    return {"messages": await store.serialize_messages(messages), "pagination": pagination}


@router.post("/messages", status_code=status.HTTP_201_CREATED)
async def send_message(
    body: MessageCreateRequest,
    user: CurrentUser,
    store: Store,
    pipeline: Pipeline,
    connection_id: ConnectionId = None,
):
    """Send through the realtime pipeline; 502 when the durable write fails."""
    room_id = parse_id(body.chat_room_id, "chatRoomId")
    # Nothing reaches the room before the sender's participation is known
    await store.get_room(room_id, user.user_id)

    if body.attachments:
        results = await pipeline.send_attachments(
            room_id,
            [a.to_file_meta() for a in body.attachments],
            user,
            temp_id=body.temp_id,
            content=body.content,
            reply_to=body.reply_to,
            origin_connection_id=connection_id,
        )
        payload = {
            "messages": [r.message for r in results if r.ok],
            "failed": [{"tempId": r.temp_id, "error": r.error} for r in results if not r.ok],
        }
        if not payload["messages"]:
            return JSONResponse(status_code=results[0].error_status or 502, content=payload)
        return payload

    result = await pipeline.send_message(
        room_id,
        body.content,
        body.type,
        user,
        temp_id=body.temp_id,
        reply_to=body.reply_to,
        file_meta=body.file_meta(),
        origin_connection_id=connection_id,
    )
    if not result.ok:
        return JSONResponse(
            status_code=result.error_status or status.HTTP_502_BAD_GATEWAY,
            content={"message": result.error, "tempId": result.temp_id},
        )
    return {"message": result.message}


@router.put("/messages/{message_id}")
async def edit_message(
    message_id: int, body: MessageUpdateRequest, user: CurrentUser, pipeline: Pipeline
):
    data = await pipeline.edit_message(message_id, body.content, user)
    return {"message": data}


@router.delete("/messages/{message_id}")
async def delete_message(message_id: int, user: CurrentUser, pipeline: Pipeline):
    room_id = await pipeline.delete_message(message_id, user)
    return {"message": "Message deleted successfully", "chatRoomId": room_id}


@router.post("/messages/{message_id}/reactions")
async def toggle_reaction(
    message_id: int,
    body: ReactionRequest,
    user: CurrentUser,
    store: Store,
    pipeline: Pipeline,
):
    """Toggle the caller's reaction (add if absent, remove if present)."""
    if body.chat_room_id:
        room_id = parse_id(body.chat_room_id, "chatRoomId")
        await store.get_room(room_id, user.user_id)
    else:
        room_id = (await store.get_message(message_id, user.user_id)).chat_room_id
    message = await pipeline.toggle_reaction(room_id, message_id, body.emoji, user)
    return {
        "messageId": str(message.id),
        "added": message.find_reaction(body.emoji.strip(), user.user_id) is not None,
        "reactions": [r.to_dict() for r in message.reactions],
    }


@router.delete("/messages/{message_id}/reactions")
async def remove_reaction(
    message_id: int,
    user: CurrentUser,
    pipeline: Pipeline,
    emoji: Annotated[str, Query(min_length=1, max_length=50)],
):
    message, removed = await pipeline.remove_reaction(message_id, emoji, user)
    return {
        "messageId": str(message.id),
        "removed": removed,
        "reactions": [r.to_dict() for r in message.reactions],
    }


@router.post("/messages/read")
async def mark_read(
    body: MarkReadRequest,
    user: CurrentUser,
    store: Store,
    pipeline: Pipeline,
    connection_id: ConnectionId = None,
):
    room_id = parse_id(body.chat_room_id, "chatRoomId")
    await store.get_room(room_id, user.user_id)
    marked = await pipeline.mark_read(
        room_id, user, body.message_ids, origin_connection_id=connection_id
    )
    return {"success": True, "messageIds": marked}


@router.get("/upload/config")
async def get_upload_config(user: CurrentUser):
    return upload_config()
