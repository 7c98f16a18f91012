"""Shared fixtures: a throwaway SQLite database and helpers for async code."""

import asyncio
import os
import tempfile
import uuid

_db_dir = tempfile.mkdtemp(prefix="chat-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_db_dir}/chat-test.db"
os.environ.setdefault("LOG_FORMAT", "text")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app.db import Base, build_engine, build_session_maker  # noqa: E402
from app.main import app  # noqa: E402
from app.realtime.hub import EventHub  # noqa: E402
from app.services.chat_store import ChatUser  # noqa: E402


def auth_headers(user_id: str, workspace_id: str | None = None, user_name: str | None = None) -> dict:
    headers = {"X-User-Id": user_id, "X-User-Name": user_name or user_id.title()}
    if workspace_id:
        headers["X-Workspace-Id"] = workspace_id
    return headers


def make_user(user_id: str, workspace_id: str | None = None) -> ChatUser:
    return ChatUser(user_id=user_id, user_name=user_id.title(), workspace_id=workspace_id)


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def workspace_id() -> str:
    return f"ws-{uuid.uuid4().hex[:12]}"


@pytest.fixture
def run_db(tmp_path):
    """Run ``fn(session_maker)`` on a fresh database inside its own event loop."""

    def runner(fn):
        async def main():
            engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/store.db")
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            try:
                return await fn(build_session_maker(engine))
            finally:
                await engine.dispose()

        return asyncio.run(main())

    return runner


class FrameRecorder:
    """Fake socket sender that keeps every frame it was asked to write."""

    def __init__(self):
        self.frames: list[dict] = []

    async def __call__(self, message: dict) -> None:
        self.frames.append(message)

    def events(self) -> list[str]:
        return [f["event"] for f in self.frames]

    def of(self, event: str) -> list:
        return [f["data"] for f in self.frames if f["event"] == event]


async def connect(hub: EventHub, connection_id: str, user_id: str | None = None,
                  workspace_id: str | None = None, rooms=()) -> FrameRecorder:
    """Register (and optionally identify and join) a recorded connection."""
    recorder = FrameRecorder()
    await hub.register(connection_id, recorder)
    if user_id:
        await hub.identify(connection_id, user_id, user_id.title(), workspace_id)
    for room_id in rooms:
        await hub.join_room(connection_id, room_id)
    await hub.flush()
    recorder.frames.clear()
    return recorder
