"""
Persisted chat store.

Rooms, messages, reactions and read markers live in the database, which is
the source of truth for chat history. Every operation commits its own unit
of work; callers share nothing but the session.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import (
    ChatRoomNotFoundError,
    ConflictError,
    MessageNotFoundError,
    PermissionDeniedError,
    UserNotParticipantError,
    ValidationError,
)
from app.models.base import isoformat, utcnow
from app.models.chat_room import (
    RETENTION_DAYS_MAX,
    RETENTION_DAYS_MIN,
    ChatRoom,
    ChatRoomParticipant,
    ChatRoomType,
    direct_room_name,
)
from app.models.message import Message, MessageType
from app.models.reaction import MessageReaction, MessageRead
from app.services.attachments import FileMeta
from app.services.room_locks import RoomLockRegistry, room_locks
from app.settings import settings

logger = logging.getLogger(__name__)

GENERAL_ROOM_DESCRIPTION = "General discussion for all workspace members"


@dataclass(frozen=True)
class ChatUser:
    """Caller identity as asserted by the auth gateway."""

    user_id: str
    user_name: str
    avatar: str | None = None
    workspace_id: str | None = None


def parse_id(value, label: str = "id") -> int:
    """Parse a wire id (decimal string) into a primary key."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {label}: {value!r}")
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {label}: {value!r}") from None


def normalize_content(content: str | None) -> str:
    """Trim message content and enforce the length cap."""
    content = (content or "").strip()
    if len(content) > settings.chat_message_max_length:
        raise ValidationError(
            f"Message content exceeds {settings.chat_message_max_length} characters"
        )
    return content


def validate_message_type(message_type: str | None) -> str:
    message_type = message_type or MessageType.TEXT.value
    if message_type not in {t.value for t in MessageType}:
        raise ValidationError(f"Invalid message type: {message_type}")
    return message_type


def validate_retention_days(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("retentionDays must be an integer")
    if not RETENTION_DAYS_MIN <= value <= RETENTION_DAYS_MAX:
        raise ValidationError(
            f"retentionDays must be between {RETENTION_DAYS_MIN} and {RETENTION_DAYS_MAX}"
        )
    return value


class ChatStore:
    """Async persistence operations for chat rooms and messages."""

    def __init__(self, db: AsyncSession, locks: RoomLockRegistry | None = None):
        self.db = db
        self.locks = locks or room_locks

    async def _commit(self, conflict_message: str = "Conflicting chat update") -> None:
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            logger.info(f"Integrity error on commit: {e.orig}")
            raise ConflictError(conflict_message) from e

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    async def _load_room(self, room_id: int) -> ChatRoom:
        result = await self.db.execute(select(ChatRoom).where(ChatRoom.id == room_id))
        room = result.scalar_one_or_none()
        if not room:
            raise ChatRoomNotFoundError(room_id)
        return room

    async def get_room(self, room_id: int, user_id: str | None = None) -> ChatRoom:
        """Load a room; when user_id is given the user must participate."""
        room = await self._load_room(room_id)
        if user_id is not None and not room.is_participant(user_id):
            raise UserNotParticipantError(room_id, user_id)
        return room

    async def is_participant(self, room_id: int, user_id: str) -> bool:
        result = await self.db.execute(
            select(ChatRoomParticipant.id).where(
                ChatRoomParticipant.chat_room_id == room_id,
                ChatRoomParticipant.user_id == user_id,
            )
        )
        return result.first() is not None

    async def list_rooms(
        self,
        workspace_id: str,
        user_id: str,
        include_archived: bool = False,
    ) -> list[ChatRoom]:
        """Rooms the user participates in, most recently active first."""
        query = select(ChatRoom).where(
            ChatRoom.workspace_id == workspace_id,
            ChatRoom.participants.any(ChatRoomParticipant.user_id == user_id),
        )
        if not include_archived:
            query = query.where(ChatRoom.is_archived.is_(False))
        query = query.order_by(
            ChatRoom.last_message_at.desc().nulls_last(),
            ChatRoom.updated_at.desc(),
            ChatRoom.id.desc(),
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    def _new_room(
        self,
        workspace_id: str,
        name: str,
        room_type: str,
        created_by: str,
        description: str | None = None,
    ) -> ChatRoom:
        # Python-side column defaults only apply at flush; set settings up front
        return ChatRoom(
            workspace_id=workspace_id,
            name=name,
            description=description,
            type=room_type,
            is_archived=False,
            created_by=created_by,
            allow_file_sharing=True,
            allow_reactions=True,
            retention_days=settings.chat_default_retention_days,
            notifications=True,
            participants=[],
        )

    async def create_room(
        self,
        workspace_id: str,
        creator: ChatUser,
        name: str,
        room_type: str = ChatRoomType.PRIVATE.value,
        description: str | None = None,
        participants: list[str] | None = None,
    ) -> ChatRoom:
        """Create a room; the creator becomes its first participant and admin.

        Raises:
            ValidationError: bad name, type or participant list
            ConflictError: (workspace, type, name) already taken
        """
        if not workspace_id:
            raise ValidationError("Workspace ID is required")
        name = (name or "").strip()
        if room_type not in {t.value for t in ChatRoomType}:
            raise ValidationError(f"Invalid chat room type: {room_type}")

        others = [p for p in dict.fromkeys(participants or []) if p and p != creator.user_id]
        if room_type == ChatRoomType.DIRECT.value:
            if len(others) != 1:
                raise ValidationError("Direct chat rooms have exactly two participants")
            name = direct_room_name(creator.user_id, others[0])
        elif room_type == ChatRoomType.GENERAL.value:
            name = name or settings.chat_general_room_name
            if name != settings.chat_general_room_name:
                raise ValidationError(
                    f"General chat rooms are always named {settings.chat_general_room_name!r}"
                )

        if not name:
            raise ValidationError("Name is required")
        if len(name) > 100:
            raise ValidationError("Name must be at most 100 characters")

        room = self._new_room(workspace_id, name, room_type, creator.user_id, description)
        room.add_participant(creator.user_id, is_admin=True)
        for user_id in others:
            room.add_participant(user_id, is_admin=room_type == ChatRoomType.DIRECT.value)

        self.db.add(room)
        await self._commit("Chat room with this name already exists")
        logger.info(f"Created {room_type} chat room {room.id} ({name}) in workspace {workspace_id}")
        return room

    async def get_or_create_direct_room(
        self, workspace_id: str, user: ChatUser, other_user_id: str
    ) -> tuple[ChatRoom, bool]:
        """Return the direct room for the pair, creating it on first use."""
        if not other_user_id or other_user_id == user.user_id:
            raise ValidationError("A direct chat needs another participant")

        name = direct_room_name(user.user_id, other_user_id)
        existing = await self._find_room(workspace_id, ChatRoomType.DIRECT.value, name)
        if existing:
            return existing, False
        try:
            room = await self.create_room(
                workspace_id,
                user,
                name,
                room_type=ChatRoomType.DIRECT.value,
                participants=[other_user_id],
            )
        except ConflictError:
            # Lost the race against the other participant
            existing = await self._find_room(workspace_id, ChatRoomType.DIRECT.value, name)
            if not existing:
                raise
            return existing, False
        return room, True

    async def _find_room(self, workspace_id: str, room_type: str, name: str) -> ChatRoom | None:
        result = await self.db.execute(
            select(ChatRoom).where(
                ChatRoom.workspace_id == workspace_id,
                ChatRoom.type == room_type,
                ChatRoom.name == name,
            )
        )
        return result.scalar_one_or_none()

    async def update_room(
        self,
        room_id: int,
        user_id: str,
        name: str | None = None,
        description: str | None = None,
        is_archived: bool | None = None,
        allow_file_sharing: bool | None = None,
        allow_reactions: bool | None = None,
        retention_days: int | None = None,
        notifications: bool | None = None,
    ) -> ChatRoom:
        """Admin-only update of name, description, archive flag and settings."""
        room = await self.get_room(room_id, user_id)
        if not room.is_admin(user_id):
            raise PermissionDeniedError("Only admins can update chat room settings")

        if name is not None:
            name = name.strip()
            if name != room.name:
                if room.is_general:
                    raise ValidationError("The general chat room cannot be renamed")
                if room.is_direct:
                    raise ValidationError("Direct chat rooms cannot be renamed")
                if not name or len(name) > 100:
                    raise ValidationError("Name must be 1 to 100 characters")
                room.name = name
        if description is not None:
            if len(description) > 500:
                raise ValidationError("Description must be at most 500 characters")
            room.description = description
        if is_archived is not None:
            room.is_archived = is_archived
        if allow_file_sharing is not None:
            room.allow_file_sharing = allow_file_sharing
        if allow_reactions is not None:
            room.allow_reactions = allow_reactions
        if retention_days is not None:
            room.retention_days = validate_retention_days(retention_days)
        if notifications is not None:
            room.notifications = notifications

        room.updated_at = utcnow()
        await self._commit("Chat room with this name already exists")
        return room

    async def delete_room(self, room_id: int, user_id: str) -> None:
        """Admin-only hard delete, exclusive against message writes."""
        room = await self.get_room(room_id, user_id)
        if not room.is_admin(user_id):
            raise PermissionDeniedError("Only admins can delete chat rooms")
        if room.is_general:
            raise ValidationError("Cannot delete general chat room")

        async with self.locks.exclusive(room_id):
            await self._delete_messages(Message.chat_room_id == room_id)
            await self.db.delete(room)
            await self._commit()
        logger.info(f"Deleted chat room {room_id} by user {user_id}")

    async def add_participants(self, room_id: int, actor_id: str, user_ids: list[str]) -> ChatRoom:
        """Add users to a room; direct rooms never grow past two."""
        room = await self.get_room(room_id, actor_id)
        if not room.is_general and not room.is_admin(actor_id):
            raise PermissionDeniedError("Only admins can add participants")

        added = []
        for user_id in dict.fromkeys(user_ids):
            if not user_id:
                continue
            try:
                if room.add_participant(user_id):
                    added.append(user_id)
            except ValueError as e:
                raise ValidationError(str(e)) from e

        if added:
            room.updated_at = utcnow()
            await self._commit()
            logger.info(f"Added {len(added)} participant(s) to chat room {room_id}")
        return room

    async def remove_participant(self, room_id: int, actor_id: str, user_id: str) -> ChatRoom:
        """Remove a participant; users may always remove themselves."""
        room = await self.get_room(room_id, actor_id)
        if actor_id != user_id and not room.is_admin(actor_id):
            raise PermissionDeniedError("Only admins can remove other participants")
        if room.is_direct:
            raise ValidationError("Participants cannot be removed from direct chat rooms")

        for participant in list(room.participants):
            if participant.user_id == user_id:
                room.participants.remove(participant)
                room.updated_at = utcnow()
                await self._commit()
                logger.info(f"Removed user {user_id} from chat room {room_id}")
                return room
        raise UserNotParticipantError(room_id, user_id)

    async def create_default_rooms(self, workspace_id: str, creator_id: str) -> ChatRoom:
        """Ensure the workspace has its General room."""
        name = settings.chat_general_room_name
        existing = await self._find_room(workspace_id, ChatRoomType.GENERAL.value, name)
        if existing:
            return existing

        room = self._new_room(
            workspace_id, name, ChatRoomType.GENERAL.value, creator_id, GENERAL_ROOM_DESCRIPTION
        )
        room.add_participant(creator_id, is_admin=True)
        self.db.add(room)
        try:
            await self._commit()
        except ConflictError:
            existing = await self._find_room(workspace_id, ChatRoomType.GENERAL.value, name)
            if not existing:
                raise
            return existing
        logger.info(f"Created default General chat room for workspace {workspace_id}")
        return room

    async def add_user_to_default_rooms(self, workspace_id: str, user_id: str) -> list[ChatRoom]:
        """Add the user to every active general room of the workspace."""
        result = await self.db.execute(
            select(ChatRoom).where(
                ChatRoom.workspace_id == workspace_id,
                ChatRoom.type == ChatRoomType.GENERAL.value,
                ChatRoom.is_archived.is_(False),
            )
        )
        rooms = list(result.scalars().all())
        changed = False
        for room in rooms:
            if room.add_participant(user_id):
                changed = True
                logger.info(f"Added user {user_id} to chat room {room.name}")
        if changed:
            await self._commit()
        return rooms

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def _load_message(self, message_id: int) -> Message:
        result = await self.db.execute(select(Message).where(Message.id == message_id))
        message = result.scalar_one_or_none()
        if not message:
            raise MessageNotFoundError(message_id)
        return message

    async def get_message(self, message_id: int, user_id: str | None = None) -> Message:
        message = await self._load_message(message_id)
        if user_id is not None and not await self.is_participant(message.chat_room_id, user_id):
            raise UserNotParticipantError(message.chat_room_id, user_id)
        return message

    async def authorize_message(self, room_id: int, user_id: str, with_file: bool = False) -> ChatRoom:
        """Participation and room policy checks for a message about to be sent."""
        room = await self.get_room(room_id, user_id)
        if with_file and not room.allow_file_sharing:
            raise PermissionDeniedError("File sharing is disabled in this chat room")
        return room

    async def authorize_reaction(self, message_id: int, user_id: str) -> Message:
        """Load a message the user may react to."""
        message = await self.get_message(message_id, user_id)
        room = await self._load_room(message.chat_room_id)
        if not room.allow_reactions:
            raise PermissionDeniedError("Reactions are disabled in this chat room")
        return message

    async def create_message(
        self,
        room_id: int,
        sender: ChatUser,
        content: str,
        message_type: str = MessageType.TEXT.value,
        file_meta: FileMeta | None = None,
        reply_to_id: int | None = None,
        temp_id: str | None = None,
    ) -> Message:
        """Persist a message and refresh the room's last message snapshot.

        Holds the room's shared write gate for the whole write.
        """
        async with self.locks.shared(room_id):
            room = await self.authorize_message(room_id, sender.user_id, file_meta is not None)

            now = utcnow()
            message = Message(
                chat_room_id=room_id,
                content=content,
                type=message_type,
                sender_id=sender.user_id,
                sender_name=sender.user_name,
                sender_avatar=sender.avatar,
                file_url=file_meta.url if file_meta else None,
                file_name=file_meta.name if file_meta else None,
                file_size=file_meta.size if file_meta else None,
                is_edited=False,
                reply_to_id=reply_to_id,
                temp_id=temp_id,
                created_at=now,
                updated_at=now,
                reactions=[],
                read_by=[MessageRead(user_id=sender.user_id, read_at=now)],
            )
            self.db.add(message)
            room.set_last_message(content, sender.user_id, sender.user_name, now, message_type)
            room.updated_at = now
            await self._commit()
        return message

    async def reply_previews(self, messages: list[Message]) -> dict[int, dict]:
        """Resolve reply targets that still exist."""
        reply_ids = {m.reply_to_id for m in messages if m.reply_to_id is not None}
        if not reply_ids:
            return {}
        result = await self.db.execute(
            select(Message.id, Message.content, Message.sender_name, Message.created_at).where(
                Message.id.in_(reply_ids)
            )
        )
        return {
            row.id: {
                "id": str(row.id),
                "content": row.content,
                "senderName": row.sender_name,
                "createdAt": isoformat(row.created_at),
            }
            for row in result.all()
        }

    async def serialize_messages(self, messages: list[Message]) -> list[dict]:
        previews = await self.reply_previews(messages)
        return [m.to_dict(reply_preview=previews.get(m.reply_to_id)) for m in messages]

    async def list_messages(
        self,
        room_id: int,
        user_id: str,
        page: int = 1,
        limit: int | None = None,
    ) -> tuple[list[Message], dict]:
        """One page of history, newest page first, each page oldest-first."""
        await self.get_room(room_id, user_id)
        limit = limit or settings.chat_default_page_size
        if page < 1:
            raise ValidationError("page must be at least 1")
        if not 1 <= limit <= settings.chat_max_page_size:
            raise ValidationError(f"limit must be between 1 and {settings.chat_max_page_size}")

        skip = (page - 1) * limit
        result = await self.db.execute(
            select(Message)
            .where(Message.chat_room_id == room_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .offset(skip)
            .limit(limit)
        )
        messages = list(result.scalars().all())
        messages.reverse()

        total = await self.db.scalar(
            select(func.count(Message.id)).where(Message.chat_room_id == room_id)
        )
        pagination = {
            "page": page,
            "limit": limit,
            "total": total,
            "hasMore": skip + len(messages) < total,
        }
        return messages, pagination

    async def edit_message(self, message_id: int, user_id: str, content: str) -> Message:
        """Sender-only content edit."""
        message = await self.get_message(message_id, user_id)
        if message.sender_id != user_id:
            raise PermissionDeniedError("Only the sender can edit a message")
        content = normalize_content(content)
        if not content:
            raise ValidationError("Message content is required")

        now = utcnow()
        message.content = content
        message.is_edited = True
        message.edited_at = now
        message.updated_at = now
        await self._commit()
        return message

    async def toggle_reaction(
        self, message_id: int, user_id: str, user_name: str, emoji: str
    ) -> tuple[Message, bool]:
        """Add the (emoji, user) reaction, or remove it when already present.

        Returns the message and whether the reaction is now present.
        """
        emoji = (emoji or "").strip()
        if not emoji or len(emoji) > 50:
            raise ValidationError("Emoji is required")
        message = await self.authorize_reaction(message_id, user_id)

        existing = message.find_reaction(emoji, user_id)
        if existing:
            message.reactions.remove(existing)
            added = False
        else:
            message.reactions.append(
                MessageReaction(user_id=user_id, user_name=user_name, emoji=emoji)
            )
            added = True
        await self._commit("Reaction changed concurrently")
        return message, added

    async def remove_reaction(
        self, message_id: int, user_id: str, emoji: str
    ) -> tuple[Message, bool]:
        """Remove the (emoji, user) reaction if present; never adds one."""
        message = await self.get_message(message_id, user_id)
        existing = message.find_reaction((emoji or "").strip(), user_id)
        if existing:
            message.reactions.remove(existing)
            await self._commit()
        return message, existing is not None

    async def mark_read(
        self, room_id: int, user_id: str, message_ids: list[int] | None = None
    ) -> list[int]:
        """Add the user's read marker; None marks every message not sent by them.

        Returns the ids that gained a marker.
        """
        await self.get_room(room_id, user_id)
        query = select(Message.id).where(
            Message.chat_room_id == room_id,
            ~Message.read_by.any(MessageRead.user_id == user_id),
        )
        if message_ids:
            query = query.where(Message.id.in_(message_ids))
        else:
            query = query.where(Message.sender_id != user_id)

        result = await self.db.execute(query.order_by(Message.id))
        unread = list(result.scalars().all())
        if not unread:
            return []
        now = utcnow()
        for message_id in unread:
            self.db.add(MessageRead(message_id=message_id, user_id=user_id, read_at=now))
        await self._commit("Messages were marked read concurrently")
        return unread

    async def delete_message(self, message_id: int, user_id: str) -> Message:
        """Hard delete by the sender or a room admin."""
        message = await self.get_message(message_id, user_id)
        if message.sender_id != user_id:
            room = await self._load_room(message.chat_room_id)
            if not room.is_admin(user_id):
                raise PermissionDeniedError("Only the sender or a room admin can delete a message")
        await self.db.delete(message)
        await self._commit()
        logger.info(f"Deleted message {message_id} in chat room {message.chat_room_id} by {user_id}")
        return message

    async def purge_expired_messages(self, now=None) -> int:
        """Delete messages older than their room's retention window."""
        now = now or utcnow()
        result = await self.db.execute(select(ChatRoom.id, ChatRoom.retention_days))
        purged = 0
        for room_id, retention_days in result.all():
            cutoff = now - timedelta(days=retention_days)
            async with self.locks.shared(room_id):
                purged += await self._delete_messages(
                    Message.chat_room_id == room_id, Message.created_at < cutoff
                )
                await self._commit()
        if purged:
            logger.info(f"Purged {purged} expired message(s)")
        return purged

    async def _delete_messages(self, *criteria) -> int:
        """Bulk delete messages with their reactions and read markers."""
        message_ids = select(Message.id).where(*criteria)
        for model in (MessageReaction, MessageRead):
            await self.db.execute(
                delete(model)
                .where(model.message_id.in_(message_ids))
                .execution_options(synchronize_session=False)
            )
        result = await self.db.execute(
            delete(Message).where(*criteria).execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
