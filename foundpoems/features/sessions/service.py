"""
foundpoems/features/sessions/service.py
Session service: create, inspect, transition and publish sessions.
"""

from datetime import datetime
from typing import List, Optional

from foundpoems.core.database import get_db_session, utcnow
from foundpoems.core.errors import NotFoundError
from foundpoems.core.logging import log_event
from foundpoems.core.metrics import poems_published_total, session_transitions_total
from foundpoems.features.invites.delivery import dispatch_invite_emails
from foundpoems.features.invites.service import build_invite_batch, list_invites
from foundpoems.features.sessions.lifecycle import check_publishable, check_transition, session_phase
from foundpoems.features.sessions.persistence import SessionPersistence
from foundpoems.features.words.ledger import word_counts
from foundpoems.models.session import (
    CreatedSession,
    CreateSessionRequest,
    Poem,
    PublishRequest,
    SessionRecord,
    SessionStatus,
)


def create_session(request: CreateSessionRequest, now: Optional[datetime] = None) -> CreatedSession:
    """
    Create a manual session with its source, ledger and invites.

    Invite emails are dispatched only after the transaction commits; delivery
    problems never fail creation.
    """
    now = now or utcnow()
    with get_db_session() as db:
        record, created, invites = SessionPersistence.insert_bundle(
            db,
            title=request.title,
            starts_at=request.starts_at,
            duration_minutes=request.duration_minutes,
            source_title=request.source.title.strip(),
            source_body=request.source.body,
            invite_emails=request.invite_emails,
            now=now,
        )

    log_event(
        "info",
        "session.created",
        session_id=created.session_id,
        event_type="session.created",
        extra={"word_count": created.word_count, "invite_count": created.invite_count},
    )
    if invites:
        dispatch_invite_emails(build_invite_batch(record, request.source.title.strip(), invites))
    return created


def get_session(session_id: str) -> SessionRecord:
    record = SessionPersistence.get_session(session_id)
    if record is None:
        raise NotFoundError("Session not found")
    return record


def get_session_detail(session_id: str, now: Optional[datetime] = None) -> dict:
    """Session view with invites (no tokens), source title, poem and word metrics."""
    now = now or utcnow()
    with get_db_session() as db:
        record = SessionPersistence.fetch(db, session_id)
        if record is None:
            raise NotFoundError("Session not found")
        source_title = SessionPersistence.source_title(db, record.source_id)
        invites = list_invites(db, session_id)
        poem = SessionPersistence.fetch_poem(db, session_id)
        cap = SessionPersistence.stream_cap(db, record.stream_id)
        total, hidden = word_counts(db, session_id)

    return {
        "id": record.session_id,
        "title": record.title,
        "status": record.status.value,
        "phase": session_phase(record.status, record.starts_at, record.ends_at, now).value,
        "startsAt": record.starts_at.isoformat(),
        "endsAt": record.ends_at.isoformat(),
        "streamId": record.stream_id,
        "maxParticipants": cap,
        "source": {"id": record.source_id, "title": source_title},
        "invites": [inv.summary() for inv in invites],
        "poem": poem.to_api() if poem else None,
        "metrics": {
            "totalWords": total,
            "hiddenWords": hidden,
            "remainingWords": total - hidden,
        },
    }


def list_sessions(status: Optional[SessionStatus] = None) -> List[SessionRecord]:
    return SessionPersistence.list_sessions(status)


def change_status(session_id: str, target: SessionStatus) -> SessionRecord:
    """
    Manually move a session along the transition graph.

    Same status is a no-op success.

    Raises:
        NotFoundError: unknown session
        ConflictError: edge not allowed
    """
    with get_db_session() as db:
        record = SessionPersistence.fetch(db, session_id)
        if record is None:
            raise NotFoundError("Session not found")
        if not check_transition(record.status, target):
            return record
        SessionPersistence.set_status(db, session_id, target)

    session_transitions_total.inc(labels={"to_status": target.value})
    log_event(
        "info",
        "session.status_changed",
        session_id=session_id,
        event_type="session.status_changed",
        extra={"from": record.status.value, "to": target.value, "trigger": "manual"},
    )
    return record.model_copy(update={"status": target})


def publish_poem(session_id: str, request: PublishRequest, now: Optional[datetime] = None) -> Poem:
    """
    Upsert the session's poem and force status to published, atomically.

    Raises:
        NotFoundError: unknown session
        ConflictError: session is still scheduled or active
    """
    now = now or utcnow()
    with get_db_session() as db:
        record = SessionPersistence.fetch(db, session_id)
        if record is None:
            raise NotFoundError("Session not found")
        check_publishable(record.status)
        poem = SessionPersistence.upsert_poem(db, session_id, request.title.strip(), request.body, now)
        SessionPersistence.set_status(db, session_id, SessionStatus.PUBLISHED)

    poems_published_total.inc(labels={"mode": "manual"})
    if record.status != SessionStatus.PUBLISHED:
        session_transitions_total.inc(labels={"to_status": SessionStatus.PUBLISHED.value})
    log_event(
        "info",
        "session.published",
        session_id=session_id,
        event_type="session.published",
        extra={"poem_id": poem.poem_id, "republish": record.status == SessionStatus.PUBLISHED},
    )
    return poem


def list_poems() -> List[Poem]:
    return SessionPersistence.list_poems()
