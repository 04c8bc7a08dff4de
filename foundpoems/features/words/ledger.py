"""
foundpoems/features/words/ledger.py
Word ledger: tokenization, listing and idempotent redaction.

Redaction is a single-row conditional UPDATE (hidden = false). The first
redaction of a word stamps hidden_at/actor_id; later ones change nothing and
report the stored state. `hidden` never returns to false.
"""

from datetime import datetime
from typing import List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import false, func, insert, select, true, update
from sqlalchemy.orm import Session

from foundpoems.core.database import as_utc, get_db_session, words
from foundpoems.core.errors import NotFoundError
from foundpoems.core.metrics import words_redacted_total
from foundpoems.models.session import RedactionEvent, Word

ACTOR_ID_MAX = 64
DEFAULT_ACTOR = "anonymous"


def tokenize_source(body: str) -> List[str]:
    """Split on runs of whitespace; empty tokens are dropped."""
    return body.split()


def normalize_actor(actor_id: Optional[str]) -> str:
    actor = (actor_id or "").strip()
    return actor[:ACTOR_ID_MAX] if actor else DEFAULT_ACTOR


def _row_to_word(row) -> Word:
    return Word(
        word_id=row.id,
        session_id=row.session_id,
        index=row.position,
        text=row.text,
        hidden=bool(row.hidden),
        hidden_at=as_utc(row.hidden_at),
        actor_id=row.actor_id,
    )


def insert_words(db: Session, session_id: str, tokens: List[str]) -> int:
    """Write a fresh ledger inside the caller's transaction."""
    if not tokens:
        return 0
    db.execute(
        insert(words),
        [
            {
                "id": str(uuid4()),
                "session_id": session_id,
                "position": i,
                "text": token,
                "hidden": False,
            }
            for i, token in enumerate(tokens)
        ],
    )
    return len(tokens)


def list_words(session_id: str) -> List[Word]:
    with get_db_session() as db:
        rows = db.execute(
            select(words).where(words.c.session_id == session_id).order_by(words.c.position)
        ).all()
    return [_row_to_word(r) for r in rows]


def get_word(word_id: str) -> Optional[Word]:
    with get_db_session() as db:
        row = db.execute(select(words).where(words.c.id == word_id)).first()
    return _row_to_word(row) if row else None


def word_counts(db: Session, session_id: str) -> Tuple[int, int]:
    """(total, hidden) for one session."""
    total = db.execute(
        select(func.count()).select_from(words).where(words.c.session_id == session_id)
    ).scalar_one()
    hidden = db.execute(
        select(func.count())
        .select_from(words)
        .where(words.c.session_id == session_id, words.c.hidden == true())
    ).scalar_one()
    return int(total), int(hidden)


def visible_text(db: Session, session_id: str) -> str:
    """Surviving words in index order, space-joined."""
    rows = db.execute(
        select(words.c.text)
        .where(words.c.session_id == session_id, words.c.hidden == false())
        .order_by(words.c.position)
    ).all()
    return " ".join(r.text for r in rows)


def redact_word(word_id: str, actor_id: Optional[str], now: datetime) -> RedactionEvent:
    """
    Hide one word.

    Args:
        word_id: Word UUID
        actor_id: Untrusted caller label, truncated to 64 chars
        now: Redaction time

    Returns:
        RedactionEvent with the stored hidden_at; changed=False if it was already hidden

    Raises:
        NotFoundError: no such word
    """
    actor = normalize_actor(actor_id)
    with get_db_session() as db:
        result = db.execute(
            update(words)
            .where(words.c.id == word_id, words.c.hidden == false())
            .values(hidden=True, hidden_at=as_utc(now), actor_id=actor)
        )
        changed = result.rowcount == 1
        row = db.execute(select(words).where(words.c.id == word_id)).first()
        if row is None:
            raise NotFoundError("Word not found")
        word = _row_to_word(row)

    words_redacted_total.inc(labels={"outcome": "hidden" if changed else "already_hidden"})
    return RedactionEvent(
        word_id=word.word_id,
        session_id=word.session_id,
        hidden_at=word.hidden_at or as_utc(now),
        changed=changed,
    )
