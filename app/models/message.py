"""
Message model for chat messages.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base
from app.models.base import TimestampMixin, isoformat


class MessageType(str, Enum):
    TEXT = "text"
    FILE = "file"
    IMAGE = "image"
    SYSTEM = "system"


class Message(Base, TimestampMixin):
    """Message model for chat."""

    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_room_created", "chat_room_id", "created_at"),
        Index("ix_messages_sender_created", "sender_id", "created_at"),
        Index("ix_messages_room_type", "chat_room_id", "type"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    chat_room_id: Mapped[int] = mapped_column(ForeignKey("chat_rooms.id", ondelete="CASCADE"), nullable=False)

    content: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(20), default=MessageType.TEXT.value, nullable=False)

    # Sender snapshot, not refreshed when the user renames
    sender_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sender_name: Mapped[str] = mapped_column(String(255), nullable=False)
    sender_avatar: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Attachment metadata (URL produced by the upload service)
    file_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Edit tracking
    is_edited: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    edited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Weak reference: the target may have been deleted
    reply_to_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Client correlation token the message was sent with
    temp_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)

    # Relationships
    chat_room = relationship("ChatRoom", back_populates="messages")
    reactions = relationship(
        "MessageReaction",
        back_populates="message",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="MessageReaction.id",
    )
    read_by = relationship(
        "MessageRead",
        back_populates="message",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="MessageRead.id",
    )

    def find_reaction(self, emoji: str, user_id: str):
        for reaction in self.reactions:
            if reaction.emoji == emoji and reaction.user_id == user_id:
                return reaction
        return None

    def to_dict(self, reply_preview: dict | None = None) -> dict:
        data = {
            "id": str(self.id),
            "chatRoomId": str(self.chat_room_id),
            "content": self.content,
            "type": self.type,
            "senderId": self.sender_id,
            "senderName": self.sender_name,
            "senderAvatar": self.sender_avatar,
            "fileUrl": self.file_url,
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "isEdited": self.is_edited,
            "editedAt": isoformat(self.edited_at),
            "replyTo": str(self.reply_to_id) if self.reply_to_id is not None else None,
            "reactions": [r.to_dict() for r in self.reactions],
            "readBy": [r.to_dict() for r in self.read_by],
            "tempId": self.temp_id,
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }
        if self.reply_to_id is not None:
            data["replyToMessage"] = reply_preview
        return data

    def __repr__(self) -> str:
        return f"<Message {self.id} by {self.sender_id} in room {self.chat_room_id}>"
