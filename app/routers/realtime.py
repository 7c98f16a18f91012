"""
WebSocket endpoint for the realtime chat hub.
"""

import json
import logging
import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.realtime.events import ServerEvent

logger = logging.getLogger(__name__)
router = APIRouter(tags=["realtime"])


@router.websocket("/ws/chat")
async def websocket_chat(websocket: WebSocket):
    """One hub session per socket.

    Frames are ``{"event": ..., "data": ...}`` JSON objects. The client must
    send ``identify-user`` before it can join rooms or send messages.
    """
    hub = websocket.app.state.hub
    dispatcher = websocket.app.state.dispatcher

    await websocket.accept()
    connection_id = uuid.uuid4().hex
    asserted_user_id = (websocket.headers.get("x-user-id") or "").strip() or None
    await hub.register(connection_id, websocket.send_json, asserted_user_id=asserted_user_id)

    try:
        while True:
            try:
                data = await websocket.receive_json()
            except WebSocketDisconnect:
                break
            except json.JSONDecodeError:
                hub.send_to(
                    connection_id,
                    ServerEvent.ERROR,
                    {"event": None, "message": "Frames must be JSON objects", "status": 400},
                )
                continue

            if not isinstance(data, dict) or not isinstance(data.get("event"), str):
                hub.send_to(
                    connection_id,
                    ServerEvent.ERROR,
                    {"event": None, "message": "Frame is missing an event name", "status": 400},
                )
                continue

            await dispatcher.dispatch(connection_id, data["event"], data.get("data"))
    except Exception:
        logger.error(f"WebSocket session {connection_id} failed", exc_info=True)
        raise
    finally:
        await hub.disconnect(connection_id)

