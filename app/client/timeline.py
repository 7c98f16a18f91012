"""
Per-room message timeline that merges live pushes with fetched history.

A message can reach a client twice: once as a live ``new-message`` push
carrying only the sender's ``tempId``, and again from a history fetch
carrying the canonical id (and usually the same ``tempId``). Entries are
treated as the same logical message when

    a.id == b.id  or  a.tempId == b.id  or  a.id == b.tempId

where a live entry that has no canonical id yet uses its tempId as a
provisional id. Fetched entries that carry no tempId are correlated to
provisional entries by sender, content and a time window.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

DEFAULT_CORRELATION_WINDOW = 30.0  # seconds


def parse_timestamp(value) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Reaction:
    emoji: str
    user_id: str
    user_name: str | None = None


@dataclass
class TimelineEntry:
    """One logical message as the client renders it."""

    chat_room_id: str
    content: str
    sender_id: str
    sender_name: str | None = None
    type: str = "text"
    id: str | None = None
    temp_id: str | None = None
    timestamp: datetime | None = None
    reply_to: str | None = None
    reply_to_message: dict | None = None
    file_url: str | None = None
    file_name: str | None = None
    file_size: int | None = None
    is_edited: bool = False
    edited_at: str | None = None
    reactions: list[Reaction] = field(default_factory=list)
    read_by: dict[str, str | None] = field(default_factory=dict)

    @classmethod
    def from_wire(cls, data: dict) -> "TimelineEntry":
        """Build from a ``new-message`` payload or a fetched message record."""
        return cls(
            chat_room_id=str(data.get("chatRoomId")),
            content=data.get("content") or "",
            sender_id=data.get("senderId"),
            sender_name=data.get("senderName"),
            type=data.get("type") or "text",
            id=_str_or_none(data.get("id")),
            temp_id=data.get("tempId") or None,
            timestamp=parse_timestamp(data.get("createdAt") or data.get("timestamp")),
            reply_to=_str_or_none(data.get("replyTo")),
            reply_to_message=data.get("replyToMessage"),
            file_url=data.get("fileUrl"),
            file_name=data.get("fileName"),
            file_size=data.get("fileSize"),
            is_edited=bool(data.get("isEdited", False)),
            edited_at=data.get("editedAt"),
            reactions=[
                Reaction(r["emoji"], r["userId"], r.get("userName"))
                for r in data.get("reactions") or []
            ],
            read_by={r["userId"]: r.get("readAt") for r in data.get("readBy") or []},
        )

    @property
    def provisional(self) -> bool:
        return self.id is None

    @property
    def key(self) -> str | None:
        """Canonical id, or the tempId while provisional."""
        return self.id or self.temp_id

    def matches(self, other: "TimelineEntry") -> bool:
        a_id, b_id = self.key, other.key
        if a_id and a_id == b_id:
            return True
        if self.temp_id and self.temp_id == b_id:
            return True
        if a_id and a_id == other.temp_id:
            return True
        return False

    def matches_id(self, message_id: str) -> bool:
        """Does an event's messageId refer to this entry?"""
        return bool(message_id) and message_id in (self.id, self.temp_id)

    def promote(self, record: "TimelineEntry") -> None:
        """Adopt the canonical id and server-side fields of a persisted record."""
        self.id = record.id
        self.temp_id = self.temp_id or record.temp_id
        self.timestamp = record.timestamp or self.timestamp
        self.content = record.content
        self.sender_name = record.sender_name or self.sender_name
        self.reply_to_message = record.reply_to_message
        self.is_edited = record.is_edited
        self.edited_at = record.edited_at
        self.reactions = list(record.reactions)
        for user_id, read_at in record.read_by.items():
            self.read_by.setdefault(user_id, read_at)

    def toggle_reaction(self, emoji: str, user_id: str, user_name: str | None = None) -> bool:
        """Add the (emoji, user) pair, or remove it if present. Returns presence."""
        for reaction in self.reactions:
            if reaction.emoji == emoji and reaction.user_id == user_id:
                self.reactions.remove(reaction)
                return False
        self.reactions.append(Reaction(emoji, user_id, user_name))
        return True

    def correlates_with(self, record: "TimelineEntry", window: float) -> bool:
        """Fallback match for fetched records that lost their tempId."""
        if not self.provisional or record.sender_id != self.sender_id:
            return False
        if record.content != self.content:
            return False
        if self.timestamp is None or record.timestamp is None:
            return False
        return abs((record.timestamp - self.timestamp).total_seconds()) <= window


def _str_or_none(value) -> str | None:
    return str(value) if value is not None and value != "" else None


class MessageTimeline:
    """Ordered, duplicate-free message sequence for one room."""

    def __init__(self, chat_room_id: str, correlation_window: float = DEFAULT_CORRELATION_WINDOW):
        self.chat_room_id = str(chat_room_id)
        self.correlation_window = correlation_window
        self.entries: list[TimelineEntry] = []

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def find(self, message_id: str) -> TimelineEntry | None:
        for entry in self.entries:
            if entry.matches_id(message_id):
                return entry
        return None

    def find_target(self, payload: dict) -> TimelineEntry | None:
        """The entry an event names by canonical id, else by its tempId.

        A provisional entry found by tempId adopts the event's canonical id.
        """
        message_id = _str_or_none(payload.get("messageId"))
        entry = self.find(message_id)
        if entry is None:
            entry = self.find(_str_or_none(payload.get("tempId")))
            if entry is not None and entry.provisional and message_id:
                entry.id = message_id
        return entry

    def _find_match(self, candidate: TimelineEntry) -> TimelineEntry | None:
        for entry in self.entries:
            if entry.matches(candidate):
                return entry
        return None

    def contents(self) -> list[str]:
        return [entry.content for entry in self.entries]

    # ------------------------------------------------------------------

    def apply_live(self, payload: dict) -> bool:
        """Append a pushed message unless it is already present."""
        entry = TimelineEntry.from_wire(payload)
        if entry.key is None:
            logger.debug("Ignoring live message without id or tempId")
            return False
        if self._find_match(entry):
            return False
        self.entries.append(entry)
        return True

    def apply_page(self, records: list[dict]) -> int:
        """Merge an older history page (oldest-first); returns entries added.

        Records already present promote their provisional counterpart in
        place; the rest are prepended in page order.
        """
        fresh = []
        for record in (TimelineEntry.from_wire(r) for r in records):
            existing = self._find_match(record)
            if existing is None and not record.temp_id:
                existing = self._correlate(record)
            if existing is None:
                if not any(f.matches(record) for f in fresh):
                    fresh.append(record)
                continue
            if existing.provisional and record.id:
                existing.promote(record)
        self.entries[:0] = fresh
        return len(fresh)

    def _correlate(self, record: TimelineEntry) -> TimelineEntry | None:
        for entry in self.entries:
            if entry.correlates_with(record, self.correlation_window):
                return entry
        return None

    def apply_persisted(self, ack: dict) -> TimelineEntry | None:
        """Promote the provisional entry named by a ``message-persisted`` ack."""
        temp_id = ack.get("tempId")
        message_id = _str_or_none(ack.get("messageId"))
        for entry in self.entries:
            if entry.temp_id == temp_id and entry.provisional:
                entry.id = message_id
                entry.timestamp = parse_timestamp(ack.get("createdAt")) or entry.timestamp
                return entry
        return None

    def apply_failed(self, payload: dict) -> TimelineEntry | None:
        """Drop a provisional entry that failed to persist; returns it for the composer."""
        return self._remove_provisional(payload.get("tempId"))

    def apply_retracted(self, payload: dict) -> TimelineEntry | None:
        return self._remove_provisional(payload.get("tempId"))

    def _remove_provisional(self, temp_id: str | None) -> TimelineEntry | None:
        if not temp_id:
            return None
        for entry in self.entries:
            if entry.temp_id == temp_id and entry.provisional:
                self.entries.remove(entry)
                return entry
        return None

    def apply_reaction(self, payload: dict) -> bool:
        entry = self.find_target(payload)
        if entry is None:
            return False
        entry.toggle_reaction(payload.get("emoji"), payload.get("userId"), payload.get("userName"))
        return True

    def apply_deleted(self, payload: dict) -> TimelineEntry | None:
        entry = self.find_target(payload)
        if entry is not None:
            self.entries.remove(entry)
        return entry

    def apply_updated(self, payload: dict) -> bool:
        entry = self.find_target(payload)
        if entry is None:
            return False
        entry.content = payload.get("content", entry.content)
        entry.is_edited = bool(payload.get("isEdited", True))
        entry.edited_at = payload.get("editedAt")
        return True

    def apply_read(self, payload: dict) -> int:
        """Add the reader's marker to each listed message (add-to-set)."""
        user_id = payload.get("userId")
        read_at = payload.get("timestamp")
        message_ids = payload.get("messageIds") or []
        if not message_ids:
            # No ids: every message not sent by the reader
            targets = [e for e in self.entries if e.sender_id != user_id]
        else:
            targets = [e for e in (self.find(str(m)) for m in message_ids) if e is not None]
        marked = 0
        for entry in targets:
            if user_id not in entry.read_by:
                entry.read_by[user_id] = read_at
                marked += 1
        return marked
