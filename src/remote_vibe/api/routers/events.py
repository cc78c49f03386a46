"""WebSocket hub for the push interface.

One connection is one observer. The client sends ``join``/``leave``/``heartbeat``
frames; the server pushes session events as JSON. Nothing is replayed on
(re)connect: clients call the HTTP interface to resynchronize.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import UTC, datetime
from typing import Any, Dict

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from ...core.config import Settings
from ...infrastructure.session_store import SessionStore
from ...security.auth import token_matches
from ...services.notification_bridge import NotificationBridge, Observer


logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def _frame(event: str, **fields: Any) -> Dict[str, Any]:
    return {"event": event, "timestamp": _now_iso(), **fields}


async def _handle_frame(
    websocket: WebSocket,
    frame: Any,
    observer_id: str,
    store: SessionStore,
    bridge: NotificationBridge,
) -> None:
    if not isinstance(frame, dict):
        await websocket.send_json(_frame("error", code="validation_error", detail="Frame must be a JSON object"))
        return
    action = str(frame.get("action") or "").lower()
    if action == "heartbeat":
        await websocket.send_json(_frame("heartbeat", sessions=bridge.subscriptions(observer_id)))
        return
    session_id = frame.get("session_id")
    if action not in ("join", "leave") or not isinstance(session_id, str) or not session_id:
        await websocket.send_json(
            _frame("error", code="validation_error", detail="Expected join/leave with a session_id")
        )
        return
    if action == "join":
        if store.get_session(session_id) is None:
            await websocket.send_json(_frame("error", code="not_found", detail="Session not found", session_id=session_id))
            return
        bridge.subscribe(observer_id, session_id)
        await websocket.send_json(_frame("joined", session_id=session_id))
        return
    bridge.unsubscribe(observer_id, session_id)
    await websocket.send_json(_frame("left", session_id=session_id))


async def _pump_events(websocket: WebSocket, observer: Observer) -> None:
    while True:
        event = await observer.next_event()
        await websocket.send_json(event.model_dump(mode="json"))


async def _read_frames(websocket: WebSocket, observer_id: str, store: SessionStore, bridge: NotificationBridge) -> None:
    while True:
        raw = await websocket.receive_text()
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            await websocket.send_json(_frame("error", code="validation_error", detail="Frame is not valid JSON"))
            continue
        await _handle_frame(websocket, frame, observer_id, store, bridge)


@router.websocket("/sessions/events")
async def session_events(websocket: WebSocket) -> None:
    settings: Settings = websocket.app.state.settings
    store: SessionStore = websocket.app.state.store
    bridge: NotificationBridge = websocket.app.state.bridge

    token = websocket.query_params.get("token")
    if token is None:
        header = websocket.headers.get("authorization") or ""
        if header.lower().startswith("bearer "):
            token = header[7:].strip()
    if not token_matches(settings, token):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Unauthorized")
        return

    await websocket.accept()
    observer_id = uuid.uuid4().hex
    observer = bridge.register(observer_id)
    logger.info("Observer %s connected", observer_id)
    reader = asyncio.create_task(_read_frames(websocket, observer_id, store, bridge))
    writer = asyncio.create_task(_pump_events(websocket, observer))
    try:
        done, _pending = await asyncio.wait({reader, writer}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning("Observer %s connection ended with error: %s", observer_id, exc)
    finally:
        for task in (reader, writer):
            task.cancel()
        await asyncio.gather(reader, writer, return_exceptions=True)
        bridge.unregister(observer_id)
        logger.info("Observer %s disconnected", observer_id)
