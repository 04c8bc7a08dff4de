"""
foundpoems/api/sessions.py
Sessions API: create, inspect, transition, publish; word ledger and redaction.
"""

import asyncio
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from foundpoems.core.admin_auth import AdminActor, require_admin
from foundpoems.core.errors import ValidationError
from foundpoems.features.sessions.service import (
    change_status,
    create_session,
    get_session,
    get_session_detail,
    list_poems,
    list_sessions,
    publish_poem,
)
from foundpoems.features.words.ledger import list_words
from foundpoems.features.words.service import redact_for_participant
from foundpoems.models.session import (
    CreateSessionRequest,
    PublishRequest,
    SessionRecord,
    SessionStatus,
    StatusChangeRequest,
)
from foundpoems.realtime.hub import hub

router = APIRouter(tags=["sessions"])


def _parse_now(now: Optional[str]) -> Optional[datetime]:
    if not now:
        return None
    try:
        return datetime.fromisoformat(now.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError("Invalid ISO timestamp format for 'now' parameter")


def _session_summary(record: SessionRecord) -> dict:
    return {
        "id": record.session_id,
        "title": record.title,
        "status": record.status.value,
        "startsAt": record.starts_at.isoformat(),
        "endsAt": record.ends_at.isoformat(),
        "streamId": record.stream_id,
        "createdAt": record.created_at.isoformat() if record.created_at else None,
    }


@router.post("/api/sessions", status_code=201)
def create_session_endpoint(request: CreateSessionRequest, actor: AdminActor = Depends(require_admin)):
    """Create a manual session (admin)"""
    created = create_session(request)
    return {
        "sessionId": created.session_id,
        "inviteCount": created.invite_count,
        "wordCount": created.word_count,
        "startsAt": created.starts_at.isoformat(),
        "endsAt": created.ends_at.isoformat(),
    }


@router.get("/api/sessions/{session_id}")
async def get_session_endpoint(
    session_id: str,
    now: Optional[str] = Query(None, description="Fixed timestamp for deterministic testing (ISO format)"),
):
    """Session detail plus the live participant count on this node"""
    detail = await asyncio.to_thread(get_session_detail, session_id, now=_parse_now(now))
    detail["connected"] = await hub.participant_count(session_id)
    return {"session": detail}


@router.patch("/api/sessions/{session_id}/state")
def change_status_endpoint(
    session_id: str,
    request: StatusChangeRequest,
    actor: AdminActor = Depends(require_admin),
):
    """Manual lifecycle transition (admin)"""
    record = change_status(session_id, request.status)
    return {"session": _session_summary(record)}


@router.post("/api/sessions/{session_id}/publish", status_code=201)
def publish_endpoint(
    session_id: str,
    request: PublishRequest,
    actor: AdminActor = Depends(require_admin),
):
    """Publish (or republish) the session's poem (admin)"""
    poem = publish_poem(session_id, request)
    return {"poem": poem.to_api()}


@router.get("/api/admin/sessions")
def list_sessions_endpoint(
    status: Optional[SessionStatus] = Query(None),
    actor: AdminActor = Depends(require_admin),
):
    records = list_sessions(status)
    return {"sessions": [_session_summary(r) for r in records], "count": len(records)}


@router.get("/api/sessions/{session_id}/words")
def list_words_endpoint(session_id: str):
    """Full ledger in index order, for reconciliation after missed broadcasts"""
    get_session(session_id)
    return {"words": [w.to_api() for w in list_words(session_id)]}


@router.patch("/api/words/{word_id}/hide")
async def hide_word_endpoint(
    word_id: str,
    x_actor_id: Optional[str] = Header(None),
    x_participant_token: Optional[str] = Header(None),
):
    """Redact one word and broadcast the change to the session room"""
    event = await redact_for_participant(word_id, x_actor_id, participant_token=x_participant_token)
    return {
        "word": {
            "id": event.word_id,
            "sessionId": event.session_id,
            "hidden": True,
            "hiddenAt": event.hidden_at.isoformat(),
        },
        "changed": event.changed,
    }


@router.get("/api/poems")
def list_poems_endpoint():
    poems = list_poems()
    return {"poems": [p.to_api() for p in poems]}
