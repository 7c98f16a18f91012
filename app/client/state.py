"""
Client-side chat state: routes hub events to the right room timeline.
"""

import logging
import time
from collections.abc import Callable

from app.client.indicators import DEFAULT_TYPING_TIMEOUT, TypingIndicators
from app.client.timeline import DEFAULT_CORRELATION_WINDOW, MessageTimeline, TimelineEntry

logger = logging.getLogger(__name__)

# Events scoped to one chat room
ROOM_EVENTS = {
    "new-message",
    "message-persisted",
    "message-failed",
    "message-retracted",
    "message-reaction-added",
    "message-deleted",
    "message-updated",
    "messages-read",
    "user-typing",
    "user-stopped-typing",
}


class ChatClientState:
    """Timelines, subscriptions and typing state for one signed-in user."""

    def __init__(
        self,
        user_id: str,
        typing_timeout: float = DEFAULT_TYPING_TIMEOUT,
        correlation_window: float = DEFAULT_CORRELATION_WINDOW,
        clock: Callable[[], float] = time.monotonic,
        active_room_only: bool = False,
    ):
        self.user_id = user_id
        self.correlation_window = correlation_window
        self.active_room_only = active_room_only
        self.subscribed: set[str] = set()
        self.active_room_id: str | None = None
        self.timelines: dict[str, MessageTimeline] = {}
        self.typing = TypingIndicators(typing_timeout, clock)
        self.failed: list[TimelineEntry] = []
        self.identified = False

    def subscribe(self, chat_room_id) -> MessageTimeline:
        room_id = str(chat_room_id)
        self.subscribed.add(room_id)
        return self.timeline(room_id)

    def unsubscribe(self, chat_room_id) -> None:
        room_id = str(chat_room_id)
        self.subscribed.discard(room_id)
        self.timelines.pop(room_id, None)
        self.typing.clear_room(room_id)
        if self.active_room_id == room_id:
            self.active_room_id = None

    def set_active_room(self, chat_room_id) -> MessageTimeline:
        self.active_room_id = str(chat_room_id)
        return self.subscribe(chat_room_id)

    def timeline(self, chat_room_id) -> MessageTimeline:
        room_id = str(chat_room_id)
        if room_id not in self.timelines:
            self.timelines[room_id] = MessageTimeline(room_id, self.correlation_window)
        return self.timelines[room_id]

    def _accepts(self, room_id: str | None) -> bool:
        if room_id is None or room_id not in self.subscribed:
            return False
        if self.active_room_only and room_id != self.active_room_id:
            return False
        return True

    def handle_frame(self, message: dict):
        return self.handle_event(message.get("event"), message.get("data"))

    def handle_event(self, event: str, data):
        """Apply one hub event. Returns the handler's result, or None when discarded."""
        if event == "user-identified":
            self.identified = bool(data and data.get("success"))
            return self.identified
        if event == "joined-chat":
            self.subscribe(data)
            return True
        if event == "left-chat":
            self.unsubscribe(data)
            return True
        if event not in ROOM_EVENTS:
            return None

        room_id = data.get("chatRoomId") if isinstance(data, dict) else None
        if room_id is None and event in ("message-deleted", "message-reaction-added"):
            room_id = self.active_room_id
        room_id = str(room_id) if room_id is not None else None
        if not self._accepts(room_id):
            logger.debug(f"Discarding {event} for unsubscribed room {room_id}")
            return None

        timeline = self.timeline(room_id)
        if event == "new-message":
            # A message ends the sender's typing indicator
            self.typing.stop(room_id, data.get("senderId"))
            return timeline.apply_live(data)
        if event == "message-persisted":
            return timeline.apply_persisted(data)
        if event == "message-failed":
            entry = timeline.apply_failed(data)
            if entry is not None:
                self.failed.append(entry)
            return entry
        if event == "message-retracted":
            return timeline.apply_retracted(data)
        if event == "message-reaction-added":
            return timeline.apply_reaction(data)
        if event == "message-deleted":
            return timeline.apply_deleted(data)
        if event == "message-updated":
            return timeline.apply_updated(data)
        if event == "messages-read":
            return timeline.apply_read(data)
        if event == "user-typing":
            if data.get("userId") == self.user_id:
                return False
            self.typing.start(room_id, data.get("userId"), data.get("userName"))
            return True
        if event == "user-stopped-typing":
            return self.typing.stop(room_id, data.get("userId"))
        return None
