"""
Client-side typing indicators.

The hub does not promise a stop event (an abrupt disconnect never sends
one), so every indicator carries its own deadline and disappears when it
passes.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass

DEFAULT_TYPING_TIMEOUT = 3.0  # seconds


@dataclass
class TypingUser:
    user_id: str
    user_name: str | None
    deadline: float


class TypingIndicators:
    """Who is typing, per room, with deadline-based expiry."""

    def __init__(
        self,
        timeout: float = DEFAULT_TYPING_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout = timeout
        self.clock = clock
        self._rooms: dict[str, dict[str, TypingUser]] = {}

    def start(self, chat_room_id: str, user_id: str, user_name: str | None = None) -> None:
        room = self._rooms.setdefault(str(chat_room_id), {})
        room[user_id] = TypingUser(user_id, user_name, self.clock() + self.timeout)

    def stop(self, chat_room_id: str, user_id: str) -> bool:
        room = self._rooms.get(str(chat_room_id))
        if not room or user_id not in room:
            return False
        del room[user_id]
        if not room:
            del self._rooms[str(chat_room_id)]
        return True

    def clear_room(self, chat_room_id: str) -> None:
        self._rooms.pop(str(chat_room_id), None)

    def expire(self) -> int:
        """Drop every indicator whose deadline has passed."""
        now = self.clock()
        expired = 0
        for room_id in list(self._rooms):
            room = self._rooms[room_id]
            for user_id in [u for u, t in room.items() if t.deadline <= now]:
                del room[user_id]
                expired += 1
            if not room:
                del self._rooms[room_id]
        return expired

    def active(self, chat_room_id: str) -> list[TypingUser]:
        self.expire()
        return list(self._rooms.get(str(chat_room_id), {}).values())

    def names(self, chat_room_id: str) -> list[str]:
        return [t.user_name or t.user_id for t in self.active(chat_room_id)]
