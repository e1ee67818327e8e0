"""WebSocket feed of a session's activity.

Clients connect to ``/ws/sessions/{session_id}`` and receive:
- connected - current session snapshot
- activity - every activity entry as it is recorded
- pong - reply to ``{"type": "ping"}``

A slow client whose queue fills up misses entries; the session never waits.
"""

import asyncio
import json
import logging
from datetime import datetime

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..exceptions import SessionNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter()

# Close code for an unknown session id
CLOSE_SESSION_NOT_FOUND = 4404


async def send_event(websocket: WebSocket, event: str, data: dict) -> None:
    """Send one event envelope to a client."""
    message = json.dumps({
        "event": event,
        "data": data,
        "timestamp": datetime.now().isoformat()
    })
    await websocket.send_text(message)


async def _forward_activity(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        entry = await queue.get()
        await send_event(websocket, "activity", entry.model_dump(mode="json"))


@router.websocket("/sessions/{session_id}")
async def session_events(websocket: WebSocket, session_id: str):
    """Stream activity for one session until the client disconnects."""
    manager = websocket.app.state.manager
    try:
        snapshot = manager.get_session(session_id)
    except SessionNotFoundError:
        await websocket.close(code=CLOSE_SESSION_NOT_FOUND)
        return

    await websocket.accept()
    queue = manager.subscribe(session_id)
    forwarder = asyncio.create_task(_forward_activity(websocket, queue))

    try:
        await send_event(websocket, "connected", snapshot.model_dump(mode="json"))

        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                logger.debug("Ignoring non-JSON websocket message: %.100s", data)
                continue

            if isinstance(message, dict) and message.get("type") == "ping":
                await send_event(websocket, "pong", {})

    except WebSocketDisconnect:
        logger.debug("Websocket client for %s disconnected", session_id)
    finally:
        forwarder.cancel()
        manager.unsubscribe(session_id, queue)
