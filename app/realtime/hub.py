"""
In-process realtime event hub.

Tracks connected sessions, their identity and their room subscriptions, and
fans events out to room or workspace subscribers. Delivery is at-most-once:
each connection owns a bounded outbox drained by its own writer task, so a
broadcast never waits on the network and a slow client only loses its own
events.

Single process only. Running several replicas needs a shared pub/sub
backplane in place of the in-memory maps kept here.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from app.exceptions import UnidentifiedConnectionError
from app.models.base import isoformat, utcnow
from app.realtime.events import ServerEvent, frame
from app.settings import settings

logger = logging.getLogger(__name__)

Sender = Callable[[dict], Awaitable[None]]


class ConnectionState(str, Enum):
    UNIDENTIFIED = "unidentified"
    IDENTIFIED = "identified"
    DISCONNECTED = "disconnected"


class Connection:
    """One client session and its outbound queue."""

    def __init__(self, connection_id: str, send: Sender, outbox_size: int):
        self.connection_id = connection_id
        self.send = send
        self.state = ConnectionState.UNIDENTIFIED
        self.user_id: str | None = None
        self.user_name: str | None = None
        self.workspace_id: str | None = None
        # User id vouched for by the gateway at handshake time, if any
        self.asserted_user_id: str | None = None
        self.rooms: set[str] = set()
        self.outbox: asyncio.Queue[dict] = asyncio.Queue(maxsize=outbox_size)
        self.dropped = 0
        self.send_failed = False
        self.writer_task: asyncio.Task | None = None

    @property
    def is_identified(self) -> bool:
        return self.state is ConnectionState.IDENTIFIED

    def enqueue(self, message: dict) -> bool:
        """Queue a frame without waiting; drops it when the outbox is full."""
        if self.state is ConnectionState.DISCONNECTED or self.send_failed:
            return False
        try:
            self.outbox.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                f"Outbox full for connection {self.connection_id}, dropped {message.get('event')}"
            )
            return False
        return True

    async def run_writer(self) -> None:
        while True:
            message = await self.outbox.get()
            try:
                if not self.send_failed:
                    await self.send(message)
            except Exception as e:
                # The reader side notices the closed socket and disconnects
                self.send_failed = True
                logger.warning(f"Failed to send to connection {self.connection_id}: {e}")
            finally:
                self.outbox.task_done()

    def start_writer(self) -> None:
        self.writer_task = asyncio.create_task(
            self.run_writer(), name=f"chat-writer-{self.connection_id}"
        )

    def close(self) -> None:
        self.state = ConnectionState.DISCONNECTED
        if self.writer_task and not self.writer_task.done():
            self.writer_task.cancel()


@dataclass
class TypingEntry:
    room_id: str
    user_id: str
    user_name: str
    connection_id: str
    handle: asyncio.TimerHandle


class EventHub:
    """Room and workspace fan-out for connected chat sessions."""

    def __init__(self, typing_timeout: float | None = None, outbox_size: int | None = None):
        self.typing_timeout = (
            typing_timeout if typing_timeout is not None else settings.chat_typing_timeout_seconds
        )
        self.outbox_size = outbox_size or settings.chat_outbox_size
        self._connections: dict[str, Connection] = {}
        self._rooms: dict[str, set[str]] = defaultdict(set)
        self._workspaces: dict[str, set[str]] = defaultdict(set)
        self._typing: dict[tuple[str, str], TypingEntry] = {}
        self._lock = asyncio.Lock()
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        logger.info("Event hub started")

    async def stop(self) -> None:
        """Drop every connection without presence broadcasts."""
        self._running = False
        async with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
            self._rooms.clear()
            self._workspaces.clear()
        for entry in self._typing.values():
            entry.handle.cancel()
        self._typing.clear()
        for connection in connections:
            connection.close()
        logger.info(f"Event hub stopped, closed {len(connections)} connection(s)")

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def register(
        self, connection_id: str, send: Sender, asserted_user_id: str | None = None
    ) -> Connection:
        """Track a new session; reconnects always use a fresh connection id."""
        if not self._running:
            raise RuntimeError("Event hub is not running")
        connection = Connection(connection_id, send, self.outbox_size)
        connection.asserted_user_id = asserted_user_id
        async with self._lock:
            if connection_id in self._connections:
                raise ValueError(f"Connection {connection_id} already registered")
            self._connections[connection_id] = connection
        connection.start_writer()
        logger.info(f"Realtime connection {connection_id} registered")
        return connection

    def get_connection(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def room_subscribers(self, room_id) -> set[str]:
        return set(self._rooms.get(str(room_id), ()))

    def is_subscribed(self, connection_id: str, room_id) -> bool:
        return connection_id in self._rooms.get(str(room_id), ())

    def _require_identified(self, connection_id: str) -> Connection:
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_identified:
            raise UnidentifiedConnectionError(connection_id)
        return connection

    @staticmethod
    def _presence(connection: Connection) -> dict:
        return {
            "userId": connection.user_id,
            "userName": connection.user_name,
            "timestamp": isoformat(utcnow()),
        }

    async def identify(
        self,
        connection_id: str,
        user_id: str,
        user_name: str,
        workspace_id: str | None = None,
    ) -> bool:
        """Bind identity to a connection and subscribe it to its workspace."""
        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None or connection.state is ConnectionState.DISCONNECTED:
                logger.warning(f"identify-user on unknown connection {connection_id}")
                return False
            if connection.workspace_id and connection.workspace_id != workspace_id:
                self._discard(self._workspaces, connection.workspace_id, connection_id)
            connection.user_id = user_id
            connection.user_name = user_name
            connection.workspace_id = workspace_id
            connection.state = ConnectionState.IDENTIFIED
            if workspace_id:
                self._workspaces[workspace_id].add(connection_id)
        connection.enqueue(
            frame(ServerEvent.USER_IDENTIFIED, {"success": True, "connectionId": connection_id})
        )
        logger.info(f"User identified: {user_name} ({user_id}) in workspace {workspace_id}")
        return True

    async def join_room(self, connection_id: str, room_id) -> bool:
        """Subscribe to a room. Returns False when already subscribed or rejected."""
        room_id = str(room_id)
        try:
            async with self._lock:
                connection = self._require_identified(connection_id)
                newly_joined = room_id not in connection.rooms
                connection.rooms.add(room_id)
                self._rooms[room_id].add(connection_id)
        except UnidentifiedConnectionError as e:
            logger.warning(f"Ignoring join-chat for room {room_id}: {e.message}")
            return False

        connection.enqueue(frame(ServerEvent.JOINED_CHAT, room_id))
        if newly_joined:
            self.broadcast(
                room_id,
                ServerEvent.USER_JOINED_ROOM,
                self._presence(connection),
                exclude_connection_id=connection_id,
            )
            logger.info(f"Connection {connection_id} joined chat room {room_id}")
        return newly_joined

    async def leave_room(self, connection_id: str, room_id) -> bool:
        room_id = str(room_id)
        try:
            async with self._lock:
                connection = self._require_identified(connection_id)
                was_member = room_id in connection.rooms
                connection.rooms.discard(room_id)
                self._discard(self._rooms, room_id, connection_id)
        except UnidentifiedConnectionError as e:
            logger.warning(f"Ignoring leave-chat for room {room_id}: {e.message}")
            return False

        connection.enqueue(frame(ServerEvent.LEFT_CHAT, room_id))
        if was_member:
            self._clear_typing(room_id, connection.user_id, connection_id)
            self.broadcast(room_id, ServerEvent.USER_LEFT_ROOM, self._presence(connection))
            logger.info(f"Connection {connection_id} left chat room {room_id}")
        return was_member

    async def disconnect(self, connection_id: str) -> None:
        """Tear down a session, explicit or not, and announce it."""
        async with self._lock:
            connection = self._connections.pop(connection_id, None)
            if connection is None:
                return
            rooms = sorted(connection.rooms)
            for room_id in rooms:
                self._discard(self._rooms, room_id, connection_id)
            if connection.workspace_id:
                self._discard(self._workspaces, connection.workspace_id, connection_id)
            was_identified = connection.is_identified
            connection.close()

        for entry in list(self._typing.values()):
            if entry.connection_id == connection_id:
                self._clear_typing(entry.room_id, entry.user_id, connection_id)

        if was_identified:
            for room_id in rooms:
                self.broadcast(room_id, ServerEvent.USER_LEFT_ROOM, self._presence(connection))
            if connection.workspace_id:
                self.broadcast_workspace(
                    connection.workspace_id,
                    ServerEvent.USER_STATUS_UPDATED,
                    {**self._presence(connection), "status": "offline"},
                )
        logger.info(f"Realtime connection {connection_id} disconnected ({len(rooms)} room(s))")

    @staticmethod
    def _discard(index: dict[str, set[str]], key: str, connection_id: str) -> None:
        members = index.get(key)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del index[key]

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def _fan_out(self, connection_ids, message: dict, exclude_connection_id: str | None) -> int:
        delivered = 0
        for connection_id in connection_ids:
            if connection_id == exclude_connection_id:
                continue
            connection = self._connections.get(connection_id)
            if connection and connection.enqueue(message):
                delivered += 1
        return delivered

    def broadcast(
        self,
        room_id,
        event: str | Enum,
        payload: Any,
        exclude_connection_id: str | None = None,
    ) -> int:
        """Queue an event for every subscriber of a room; returns the queued count."""
        subscribers = tuple(self._rooms.get(str(room_id), ()))
        return self._fan_out(subscribers, frame(event, payload), exclude_connection_id)

    def broadcast_workspace(
        self,
        workspace_id: str,
        event: str | Enum,
        payload: Any,
        exclude_connection_id: str | None = None,
    ) -> int:
        subscribers = tuple(self._workspaces.get(workspace_id, ()))
        return self._fan_out(subscribers, frame(event, payload), exclude_connection_id)

    def send_to(self, connection_id: str | None, event: str | Enum, payload: Any) -> bool:
        """Queue an event for one connection."""
        if connection_id is None:
            return False
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        return connection.enqueue(frame(event, payload))

    async def flush(self) -> None:
        """Wait until every outbox has been written."""
        for connection in list(self._connections.values()):
            await connection.outbox.join()

    # ------------------------------------------------------------------
    # Presence and typing
    # ------------------------------------------------------------------

    async def set_status(self, connection_id: str, status: str) -> bool:
        try:
            connection = self._require_identified(connection_id)
        except UnidentifiedConnectionError as e:
            logger.warning(f"Ignoring user-status-change: {e.message}")
            return False
        if not connection.workspace_id:
            return False
        self.broadcast_workspace(
            connection.workspace_id,
            ServerEvent.USER_STATUS_UPDATED,
            {**self._presence(connection), "status": status},
            exclude_connection_id=connection_id,
        )
        return True

    async def start_typing(self, connection_id: str, room_id) -> bool:
        room_id = str(room_id)
        try:
            connection = self._require_identified(connection_id)
        except UnidentifiedConnectionError as e:
            logger.warning(f"Ignoring typing-start: {e.message}")
            return False

        key = (room_id, connection.user_id)
        existing = self._typing.pop(key, None)
        if existing:
            existing.handle.cancel()
        loop = asyncio.get_running_loop()
        handle = loop.call_later(self.typing_timeout, self._expire_typing, key)
        self._typing[key] = TypingEntry(
            room_id, connection.user_id, connection.user_name, connection_id, handle
        )
        if existing is None:
            self.broadcast(
                room_id,
                ServerEvent.USER_TYPING,
                {
                    "userId": connection.user_id,
                    "userName": connection.user_name,
                    "chatRoomId": room_id,
                    "timestamp": isoformat(utcnow()),
                },
                exclude_connection_id=connection_id,
            )
        return True

    async def stop_typing(self, connection_id: str, room_id) -> bool:
        try:
            connection = self._require_identified(connection_id)
        except UnidentifiedConnectionError as e:
            logger.warning(f"Ignoring typing-stop: {e.message}")
            return False
        return self._clear_typing(str(room_id), connection.user_id, connection_id)

    def is_typing(self, room_id, user_id: str) -> bool:
        return (str(room_id), user_id) in self._typing

    def _clear_typing(self, room_id: str, user_id: str, exclude_connection_id: str | None) -> bool:
        entry = self._typing.pop((room_id, user_id), None)
        if entry is None:
            return False
        entry.handle.cancel()
        self.broadcast(
            room_id,
            ServerEvent.USER_STOPPED_TYPING,
            {"userId": entry.user_id, "userName": entry.user_name, "chatRoomId": room_id},
            exclude_connection_id=exclude_connection_id,
        )
        return True

    def _expire_typing(self, key: tuple[str, str]) -> None:
        entry = self._typing.get(key)
        if entry is None:
            return
        logger.debug(f"Typing indicator expired for user {entry.user_id} in room {entry.room_id}")
        self._clear_typing(entry.room_id, entry.user_id, entry.connection_id)
