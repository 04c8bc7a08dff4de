"""
foundpoems/features/words/service.py
Participant-facing redaction: phase and presence gates in front of the ledger,
then fan-out of the change to the session room.
"""

import asyncio
from datetime import datetime
from typing import Optional

from foundpoems.core.database import get_db_session, utcnow
from foundpoems.core.errors import ConflictError, NotFoundError, PermissionError
from foundpoems.core.logging import log_event
from foundpoems.features.sessions.lifecycle import session_phase
from foundpoems.features.sessions.persistence import SessionPersistence
from foundpoems.features.words.ledger import get_word, redact_word
from foundpoems.models.session import RedactionEvent, SessionPhase, SessionRecord
from foundpoems.realtime.hub import SessionHub, hub as default_hub

WORD_UPDATE_EVENT = "word:update"


def _load_gate_context(word_id: str):
    word = get_word(word_id)
    if word is None:
        raise NotFoundError("Word not found")
    with get_db_session() as db:
        record = SessionPersistence.fetch(db, word.session_id)
        if record is None:
            raise NotFoundError("Session not found")
        cap = SessionPersistence.stream_cap(db, record.stream_id)
    return record, cap


def check_redaction_window(record: SessionRecord, now: datetime) -> None:
    phase = session_phase(record.status, record.starts_at, record.ends_at, now)
    if phase != SessionPhase.ACTIVE:
        raise ConflictError(f"Session is not active (phase: {phase.value})")


async def redact_for_participant(
    word_id: str,
    actor_id: Optional[str],
    participant_token: Optional[str] = None,
    expected_session_id: Optional[str] = None,
    now: Optional[datetime] = None,
    hub: SessionHub = default_hub,
) -> RedactionEvent:
    """
    Gate, redact, broadcast.

    Raises:
        NotFoundError: unknown word, or a word of another session than expected_session_id
        ConflictError: session outside its active window
        PermissionError: capped session and the caller is not present on the live channel
    """
    now = now or utcnow()
    record, cap = await asyncio.to_thread(_load_gate_context, word_id)
    if expected_session_id is not None and record.session_id != expected_session_id:
        raise NotFoundError("Word not found")
    check_redaction_window(record, now)
    if cap is not None and not await hub.is_present(record.session_id, participant_token):
        raise PermissionError("Join the live session before redacting")

    event = await asyncio.to_thread(redact_word, word_id, actor_id, now)
    if event.changed:
        await broadcast_redaction(event, hub=hub)
    log_event(
        "info",
        "word.redacted",
        session_id=event.session_id,
        event_type="word.redacted",
        extra={"word_id": word_id, "changed": event.changed},
    )
    return event


async def broadcast_redaction(event: RedactionEvent, hub: SessionHub = default_hub) -> int:
    return await hub.broadcast(
        event.session_id,
        {"type": WORD_UPDATE_EVENT, "data": event.to_broadcast()},
    )
