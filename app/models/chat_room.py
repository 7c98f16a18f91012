"""
Chat room model and its participant membership table.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base
from app.models.base import TimestampMixin, isoformat
from app.settings import settings


class ChatRoomType(str, Enum):
    GENERAL = "general"
    PRIVATE = "private"
    DIRECT = "direct"


DIRECT_ROOM_SIZE = 2
RETENTION_DAYS_MIN = 1
RETENTION_DAYS_MAX = 3650


def direct_room_name(user_a: str, user_b: str) -> str:
    """Name a direct room from its sorted participant pair."""
    first, second = sorted((user_a, user_b))
    return f"direct:{first}:{second}"


class ChatRoom(Base, TimestampMixin):
    """Chat room scoped to one workspace."""

    __tablename__ = "chat_rooms"
    __table_args__ = (
        UniqueConstraint("workspace_id", "type", "name", name="uq_chat_room_workspace_type_name"),
        Index("ix_chat_rooms_workspace_type", "workspace_id", "type"),
        Index("ix_chat_rooms_workspace_archived_last", "workspace_id", "is_archived", "last_message_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    type: Mapped[str] = mapped_column(String(20), default=ChatRoomType.GENERAL.value, nullable=False)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)

    # Settings
    allow_file_sharing: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    allow_reactions: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    retention_days: Mapped[int] = mapped_column(
        Integer, default=lambda: settings.chat_default_retention_days, nullable=False
    )
    notifications: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Denormalized last message snapshot for list views
    last_message_content: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    last_message_sender_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_message_sender_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_message_type: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Relationships
    participants = relationship(
        "ChatRoomParticipant",
        back_populates="chat_room",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="ChatRoomParticipant.id",
    )
    messages = relationship(
        "Message",
        back_populates="chat_room",
        lazy="raise",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_general(self) -> bool:
        return self.type == ChatRoomType.GENERAL.value

    @property
    def is_direct(self) -> bool:
        return self.type == ChatRoomType.DIRECT.value

    @property
    def participant_ids(self) -> list[str]:
        return [p.user_id for p in self.participants]

    @property
    def admin_ids(self) -> list[str]:
        return [p.user_id for p in self.participants if p.is_admin]

    def is_participant(self, user_id: str) -> bool:
        return any(p.user_id == user_id for p in self.participants)

    def is_admin(self, user_id: str) -> bool:
        return any(p.user_id == user_id and p.is_admin for p in self.participants)

    def add_participant(self, user_id: str, is_admin: bool = False) -> bool:
        """Append a participant; returns False if already present.

        Raises ValueError when a direct room would exceed two members.
        """
        if self.is_participant(user_id):
            return False
        if self.is_direct and len(self.participants) >= DIRECT_ROOM_SIZE:
            raise ValueError("Direct chat rooms have exactly two participants")
        self.participants.append(ChatRoomParticipant(user_id=user_id, is_admin=is_admin))
        return True

    def set_last_message(self, content: str, sender_id: str, sender_name: str, timestamp: datetime, type: str) -> None:
        limit = settings.chat_last_message_preview_length
        self.last_message_content = content[:limit] + "..." if len(content) > limit else content
        self.last_message_sender_id = sender_id
        self.last_message_sender_name = sender_name
        self.last_message_at = timestamp
        self.last_message_type = type

    @property
    def last_message(self) -> dict | None:
        if self.last_message_at is None:
            return None
        return {
            "content": self.last_message_content,
            "senderId": self.last_message_sender_id,
            "senderName": self.last_message_sender_name,
            "timestamp": isoformat(self.last_message_at),
            "type": self.last_message_type,
        }

    @property
    def settings_dict(self) -> dict:
        return {
            "allowFileSharing": self.allow_file_sharing,
            "allowReactions": self.allow_reactions,
            "retentionDays": self.retention_days,
            "notifications": self.notifications,
        }

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "workspaceId": self.workspace_id,
            "name": self.name,
            "description": self.description,
            "type": self.type,
            "participants": self.participant_ids,
            "admins": self.admin_ids,
            "isArchived": self.is_archived,
            "lastMessage": self.last_message,
            "settings": self.settings_dict,
            "createdBy": self.created_by,
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<ChatRoom {self.id} {self.type}:{self.name}>"


class ChatRoomParticipant(Base, TimestampMixin):
    """Participant of a chat room; insertion order is the participant order."""

    __tablename__ = "chat_room_participants"
    __table_args__ = (
        UniqueConstraint("chat_room_id", "user_id", name="uq_chat_room_participant"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    chat_room_id: Mapped[int] = mapped_column(
        ForeignKey("chat_rooms.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    chat_room = relationship("ChatRoom", back_populates="participants")

    def __repr__(self) -> str:
        return f"<ChatRoomParticipant user={self.user_id} room={self.chat_room_id}>"
