"""
Per-room shared/exclusive write gate.

Message writes to a room hold the shared side; deleting the room holds the
exclusive side, so a room is never removed under an in-flight message write.
Single event loop only.
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class RoomGateEntry:
    """Reader/writer state for one room."""

    readers: int = 0
    writer: bool = False
    waiting_writers: int = 0
    # Callers holding or waiting on this entry; it is dropped at zero
    users: int = 0
    condition: asyncio.Condition = field(default_factory=asyncio.Condition)


class RoomLockRegistry:
    """Shared/exclusive gates keyed by room id."""

    def __init__(self):
        self._entries: dict[int, RoomGateEntry] = defaultdict(RoomGateEntry)

    def _checkout(self, room_id: int) -> RoomGateEntry:
        # No await between lookup and count, so a dropped entry is never handed out
        entry = self._entries[room_id]
        entry.users += 1
        return entry

    def _checkin(self, room_id: int, entry: RoomGateEntry) -> None:
        entry.users -= 1
        if not entry.users and self._entries.get(room_id) is entry:
            del self._entries[room_id]

    @asynccontextmanager
    async def shared(self, room_id: int):
        """Hold the room for a message write."""
        entry = self._checkout(room_id)
        try:
            async with entry.condition:
                # Waiting writers take priority so deletion is not starved
                await entry.condition.wait_for(lambda: not entry.writer and not entry.waiting_writers)
                entry.readers += 1
            try:
                yield
            finally:
                async with entry.condition:
                    entry.readers -= 1
                    entry.condition.notify_all()
        finally:
            self._checkin(room_id, entry)

    @asynccontextmanager
    async def exclusive(self, room_id: int):
        """Hold the room alone, waiting for in-flight writes to drain."""
        entry = self._checkout(room_id)
        try:
            async with entry.condition:
                entry.waiting_writers += 1
                try:
                    await entry.condition.wait_for(lambda: not entry.writer and not entry.readers)
                finally:
                    entry.waiting_writers -= 1
                    # Readers parked behind this writer re-check when it gives up
                    entry.condition.notify_all()
                entry.writer = True
            logger.debug(f"Exclusive gate acquired for room {room_id}")
            try:
                yield
            finally:
                async with entry.condition:
                    entry.writer = False
                    entry.condition.notify_all()
        finally:
            self._checkin(room_id, entry)

    def is_busy(self, room_id: int) -> bool:
        entry = self._entries.get(room_id)
        return bool(entry and (entry.readers or entry.writer))


room_locks = RoomLockRegistry()
