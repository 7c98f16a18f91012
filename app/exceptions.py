"""
Chat domain exceptions.

Every error raised by the store or pipeline is a ChatError carrying the HTTP
status the REST layer answers with; the realtime layer turns them into
``error`` events instead.
"""


class ChatError(Exception):
    """Base exception for chat operations."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ChatError):
    """Input rejected before any hub or store write."""
    status_code = 400


class NotAuthenticatedError(ChatError):
    status_code = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class PermissionDeniedError(ChatError):
    status_code = 403


class NotFoundError(ChatError):
    status_code = 404


class ChatRoomNotFoundError(NotFoundError):
    """Chat room not found"""
    def __init__(self, room_id):
        super().__init__(f"Chat room not found: {room_id}")
        self.room_id = room_id


class MessageNotFoundError(NotFoundError):
    """Message not found"""
    def __init__(self, message_id):
        super().__init__(f"Message not found: {message_id}")
        self.message_id = message_id


class UserNotParticipantError(PermissionDeniedError):
    """User is not a participant of the chat room"""
    def __init__(self, room_id, user_id: str):
        super().__init__(f"User {user_id} is not a participant of chat room {room_id}")
        self.room_id = room_id
        self.user_id = user_id


class ConflictError(ChatError):
    status_code = 409


class UnidentifiedConnectionError(ChatError):
    """Room or broadcast operation attempted before identify-user."""
    def __init__(self, connection_id: str):
        super().__init__(f"Connection {connection_id} has not identified a user")
        self.connection_id = connection_id


class StoreWriteError(ChatError):
    """Durable write failed after the realtime path already delivered."""
    status_code = 502
