"""
HTTP client for paginated chat history.
"""

from typing import Any

import httpx

from app.client.timeline import MessageTimeline


class HistoryClient:
    """Fetch message pages from the chat API and merge them into timelines."""

    def __init__(
        self,
        base_url: str,
        user_id: str,
        user_name: str | None = None,
        workspace_id: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.headers = {"X-User-Id": user_id}
        if user_name:
            self.headers["X-User-Name"] = user_name
        if workspace_id:
            self.headers["X-Workspace-Id"] = workspace_id
        self._client = client

    async def _request(self, method: str, endpoint: str, **kwargs) -> dict[str, Any]:
        if self._client is not None:
            response = await self._client.request(
                method, f"{self.base_url}{endpoint}", headers=self.headers, **kwargs
            )
            response.raise_for_status()
            return response.json()
        async with httpx.AsyncClient() as client:
            response = await client.request(
                method, f"{self.base_url}{endpoint}", headers=self.headers, **kwargs
            )
            response.raise_for_status()
            return response.json()

    async def fetch_page(
        self, chat_room_id: str, page: int = 1, limit: int = 50
    ) -> tuple[list[dict], dict]:
        """One page of messages (oldest-first) and its pagination block."""
        data = await self._request(
            "GET",
            "/api/chat/messages",
            params={"chatRoomId": str(chat_room_id), "page": page, "limit": limit},
        )
        return data.get("messages", []), data.get("pagination", {})

    async def load_page(
        self, timeline: MessageTimeline, page: int = 1, limit: int = 50
    ) -> dict:
        """Fetch a page and merge it into the timeline; returns pagination."""
        messages, pagination = await self.fetch_page(timeline.chat_room_id, page, limit)
        timeline.apply_page(messages)
        return pagination
