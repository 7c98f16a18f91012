# Models package
from app.db import Base
from app.models.chat_room import ChatRoom, ChatRoomParticipant, ChatRoomType
from app.models.message import Message, MessageType
from app.models.reaction import MessageReaction, MessageRead

__all__ = [
    "Base",
    "ChatRoom",
    "ChatRoomParticipant",
    "ChatRoomType",
    "Message",
    "MessageType",
    "MessageReaction",
    "MessageRead",
]
