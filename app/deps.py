"""
FastAPI dependencies for identity, database, and the realtime services.
"""

from typing import Annotated

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import get_db
from app.exceptions import NotAuthenticatedError, ValidationError
from app.realtime.hub import EventHub
from app.services.chat_store import ChatStore, ChatUser
from app.services.pipeline import MessagePipeline

# Type alias for database dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]


async def get_current_user(
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_name: Annotated[str | None, Header()] = None,
    x_user_avatar: Annotated[str | None, Header()] = None,
    x_workspace_id: Annotated[str | None, Header()] = None,
) -> ChatUser:
    """Identity asserted by the upstream auth gateway.

    Raises 401 when no user id header is present.
    """
    if not x_user_id or not x_user_id.strip():
        raise NotAuthenticatedError()
    user_id = x_user_id.strip()
    return ChatUser(
        user_id=user_id,
        user_name=(x_user_name or "").strip() or user_id,
        avatar=x_user_avatar or None,
        workspace_id=(x_workspace_id or "").strip() or None,
    )


CurrentUser = Annotated[ChatUser, Depends(get_current_user)]


def get_chat_store(db: DBSession) -> ChatStore:
    return ChatStore(db)


Store = Annotated[ChatStore, Depends(get_chat_store)]


def get_hub(request: Request) -> EventHub:
    return request.app.state.hub


def get_pipeline(request: Request) -> MessagePipeline:
    return request.app.state.pipeline


Hub = Annotated[EventHub, Depends(get_hub)]
Pipeline = Annotated[MessagePipeline, Depends(get_pipeline)]


def resolve_workspace_id(user: ChatUser, workspace_id: str | None) -> str:
    """Explicit workspace id, else the one from the identity headers."""
    workspace_id = workspace_id or user.workspace_id
    if not workspace_id:
        raise ValidationError("Workspace ID is required")
    return workspace_id
