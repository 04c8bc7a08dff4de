"""
foundpoems/api/realtime.py
WebSocket endpoint for live sessions: presence, capacity and redaction relay.

Implements /v1/ws/sessions/{session_id}; the participant token (from the invite
link) comes from ?token= or the X-Participant-Token header.
"""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from datetime import datetime, timezone
from typing import Optional, Tuple
from uuid import uuid4
import asyncio
import json

from foundpoems.realtime.hub import hub
from foundpoems.core.config import settings
from foundpoems.core.database import get_db_session, utcnow
from foundpoems.core.errors import AppError, CapacityError
from foundpoems.core.logging import log_event
from foundpoems.core.metrics import ws_rejections_total
from foundpoems.features.invites.service import find_invite
from foundpoems.features.sessions.lifecycle import session_phase
from foundpoems.features.sessions.persistence import SessionPersistence
from foundpoems.features.words.service import redact_for_participant
from foundpoems.models.session import SessionRecord

router = APIRouter()

PRESENCE_EVENT = "presence"


def _load_context(session_id: str, token: str) -> Tuple[Optional[SessionRecord], Optional[int], bool]:
    with get_db_session() as db:
        record = SessionPersistence.fetch(db, session_id)
        cap = SessionPersistence.stream_cap(db, record.stream_id) if record else None
    invite_ok = record is not None and find_invite(session_id, token) is not None
    return record, cap, invite_ok


@router.websocket("/v1/ws/sessions/{session_id}")
async def session_socket(websocket: WebSocket, session_id: str):
    """
    Live session channel.

    Events Emitted:
    - connected (to the joining socket)
    - presence {count}
    - word:update {id, hiddenAt}

    Client Messages:
    - {"type": "ping"} -> pong, refreshes presence
    - {"type": "redact", "word_id": ..., "actor_id": ...}
    """
    await websocket.accept()
    request_id = websocket.headers.get("X-Request-Id") or str(uuid4())
    connection_id = str(uuid4())

    token = websocket.query_params.get("token") or websocket.headers.get("X-Participant-Token")
    if not token:
        ws_rejections_total.inc(labels={"reason": "unauthorized"})
        await _reject_and_close(websocket, request_id, "unauthorized", "Missing participant token")
        return

    record, cap, invite_ok = await asyncio.to_thread(_load_context, session_id, token)
    if record is None:
        ws_rejections_total.inc(labels={"reason": "not_found"})
        await _reject_and_close(websocket, request_id, "not_found", "Session not found")
        return
    if not invite_ok:
        ws_rejections_total.inc(labels={"reason": "forbidden"})
        log_event("info", "ws.unauthorized", request_id=request_id, session_id=session_id, event_type="ws.unauthorized", extra={"connection_id": connection_id})
        await _reject_and_close(websocket, request_id, "forbidden", "Unknown participant token")
        return

    try:
        count = await hub.try_join(session_id, token, websocket, max_participants=cap)
    except CapacityError:
        ws_rejections_total.inc(labels={"reason": "at_capacity"})
        log_event("info", "ws.at_capacity", request_id=request_id, session_id=session_id, event_type="ws.at_capacity", extra={"connection_id": connection_id, "cap": cap})
        try:
            await websocket.send_json({"type": "at_capacity", "maxParticipants": cap})
        except Exception:
            pass
        await _close(websocket, "Session is at capacity")
        return

    log_event("info", "ws.connected", request_id=request_id, session_id=session_id, event_type="ws.connected", extra={"connection_id": connection_id, "count": count})
    await websocket.send_json({
        "type": "connected",
        "session_id": session_id,
        "phase": session_phase(record.status, record.starts_at, record.ends_at, utcnow()).value,
        "count": count,
        "ts": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id,
        "connection_id": connection_id,
    })
    await hub.broadcast(session_id, {"type": PRESENCE_EVENT, "data": {"count": count}})

    try:
        while True:
            raw_message = await websocket.receive_text()
            if len(raw_message.encode("utf-8")) > settings.WS_MAX_MESSAGE_BYTES:
                log_event("info", "ws.payload_too_large", request_id=request_id, session_id=session_id, event_type="ws.payload_too_large", extra={"connection_id": connection_id})
                await _reject_and_close(websocket, request_id, "payload_too_large", "WS message too large")
                break
            try:
                data = json.loads(raw_message)
            except ValueError as e:
                log_event("debug", "ws.invalid_json", request_id=request_id, session_id=session_id, event_type="ws.invalid_json", extra={"error": str(e), "connection_id": connection_id})
                await _reject_and_close(websocket, request_id, "invalid_json", "Invalid JSON")
                break
            if not isinstance(data, dict):
                continue

            await hub.touch(session_id, websocket)
            message_type = data.get("type")
            if message_type == "ping":
                await websocket.send_json({
                    "type": "pong",
                    "ts": datetime.now(timezone.utc).isoformat(),
                    "request_id": request_id,
                })
            elif message_type == "redact":
                await _handle_redact(websocket, session_id, token, data, request_id)

    except WebSocketDisconnect:
        log_event("info", "ws.disconnected", request_id=request_id, session_id=session_id, event_type="ws.disconnected", extra={"connection_id": connection_id})
    except Exception as e:
        log_event("error", "ws.loop_error", request_id=request_id, session_id=session_id, event_type="ws.loop_error", extra={"error": str(e), "connection_id": connection_id})
    finally:
        remaining = await hub.leave(session_id, websocket)
        await hub.broadcast(session_id, {"type": PRESENCE_EVENT, "data": {"count": remaining}})


async def _handle_redact(websocket: WebSocket, session_id: str, token: str, data: dict, request_id: str) -> None:
    word_id = data.get("word_id")
    if not isinstance(word_id, str) or not word_id:
        await websocket.send_json({"type": "error", "code": "validation_error", "message": "word_id is required", "request_id": request_id})
        return
    actor_id = data.get("actor_id") if isinstance(data.get("actor_id"), str) else None
    try:
        await redact_for_participant(
            word_id, actor_id, participant_token=token, expected_session_id=session_id, hub=hub
        )
    except AppError as e:
        await websocket.send_json({"type": "error", "code": e.code, "message": e.message, "request_id": request_id})
        return


async def _close(websocket: WebSocket, reason: str) -> None:
    try:
        await websocket.close(code=1008, reason=reason)
    except Exception:
        pass


async def _reject_and_close(websocket: WebSocket, request_id: str, code: str, message: str):
    try:
        await websocket.send_json({
            "type": "error",
            "code": code,
            "message": message,
            "request_id": request_id,
        })
    except Exception:
        pass
    await _close(websocket, message)
