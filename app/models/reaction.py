"""
Message reaction and read-marker models.
"""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base
from app.models.base import TimestampMixin, isoformat, utcnow


class MessageReaction(Base, TimestampMixin):
    """Model for emoji reactions on messages."""

    __tablename__ = "message_reactions"

    id: Mapped[int] = mapped_column(primary_key=True)
    message_id: Mapped[int] = mapped_column(
        ForeignKey("messages.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Emoji - stored as unicode character(s) or shortcode
    emoji: Mapped[str] = mapped_column(String(50), nullable=False)

    message = relationship("Message", back_populates="reactions")

    # One user can only react with each emoji once per message
    __table_args__ = (
        UniqueConstraint('message_id', 'user_id', 'emoji', name='uq_message_user_emoji'),
    )

    def to_dict(self) -> dict:
        return {"emoji": self.emoji, "userId": self.user_id, "userName": self.user_name}

    def __repr__(self) -> str:
        return f"<MessageReaction {self.emoji} by user {self.user_id} on message {self.message_id}>"


class MessageRead(Base):
    """Read marker: one per (message, user)."""

    __tablename__ = "message_reads"

    id: Mapped[int] = mapped_column(primary_key=True)
    message_id: Mapped[int] = mapped_column(
        ForeignKey("messages.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    read_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    message = relationship("Message", back_populates="read_by")

    __table_args__ = (
        UniqueConstraint('message_id', 'user_id', name='uq_message_read_user'),
    )

    def to_dict(self) -> dict:
        return {"userId": self.user_id, "readAt": isoformat(self.read_at)}

    def __repr__(self) -> str:
        return f"<MessageRead message={self.message_id} user={self.user_id}>"
