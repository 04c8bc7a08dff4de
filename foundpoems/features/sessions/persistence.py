"""
foundpoems/features/sessions/persistence.py

Database access for sessions, source texts and published poems.

Methods taking a `db` argument run inside the caller's transaction; the others
open their own via get_db_session().
"""

from datetime import datetime
from typing import List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import and_, insert, select, update
from sqlalchemy.orm import Session

from foundpoems.core.database import (
    as_utc,
    feed_streams,
    get_db_session,
    published_poems,
    sessions,
    source_texts,
)
from foundpoems.features.invites.service import issue_invites
from foundpoems.features.sessions.lifecycle import compute_ends_at
from foundpoems.features.words.ledger import insert_words, tokenize_source
from foundpoems.models.invite import SessionInvite
from foundpoems.models.session import CreatedSession, Poem, SessionRecord, SessionStatus


def row_to_session(row) -> SessionRecord:
    return SessionRecord(
        session_id=row.id,
        title=row.title,
        status=SessionStatus(row.status),
        starts_at=as_utc(row.starts_at),
        ends_at=as_utc(row.ends_at),
        source_id=row.source_id,
        stream_id=row.stream_id,
        feed_item_guid=row.feed_item_guid,
        created_at=as_utc(row.created_at),
    )


def row_to_poem(row) -> Poem:
    return Poem(
        poem_id=row.id,
        session_id=row.session_id,
        title=row.title,
        body=row.body,
        published_at=as_utc(row.published_at),
    )


class SessionPersistence:
    """SQLAlchemy Core access for the session aggregate."""

    @staticmethod
    def insert_bundle(
        db: Session,
        *,
        title: str,
        starts_at: datetime,
        duration_minutes: int,
        source_title: str,
        source_body: str,
        invite_emails: List[str],
        now: datetime,
        stream_id: Optional[str] = None,
        feed_item_guid: Optional[str] = None,
        feed_item_published_at: Optional[datetime] = None,
    ) -> Tuple[SessionRecord, CreatedSession, List[SessionInvite]]:
        """
        Write source text, session, invites and word ledger.

        Everything lands in the caller's transaction, so a failure leaves no
        partial session behind.

        Returns:
            (record, created summary, issued invites)
        """
        starts_at = as_utc(starts_at)
        ends_at = compute_ends_at(starts_at, duration_minutes)
        now = as_utc(now)
        source_id = str(uuid4())
        session_id = str(uuid4())

        db.execute(
            insert(source_texts).values(
                id=source_id, title=source_title, body=source_body, created_at=now
            )
        )
        db.execute(
            insert(sessions).values(
                id=session_id,
                title=title,
                status=SessionStatus.SCHEDULED.value,
                starts_at=starts_at,
                ends_at=ends_at,
                source_id=source_id,
                stream_id=stream_id,
                feed_item_guid=feed_item_guid,
                feed_item_published_at=as_utc(feed_item_published_at),
                created_at=now,
            )
        )
        invites = issue_invites(db, session_id, invite_emails, now)
        word_count = insert_words(db, session_id, tokenize_source(source_body))

        record = SessionRecord(
            session_id=session_id,
            title=title,
            status=SessionStatus.SCHEDULED,
            starts_at=starts_at,
            ends_at=ends_at,
            source_id=source_id,
            stream_id=stream_id,
            feed_item_guid=feed_item_guid,
            created_at=now,
        )
        created = CreatedSession(
            session_id=session_id,
            invite_count=len(invites),
            word_count=word_count,
            starts_at=starts_at,
            ends_at=ends_at,
        )
        return record, created, invites

    @staticmethod
    def fetch(db: Session, session_id: str) -> Optional[SessionRecord]:
        row = db.execute(select(sessions).where(sessions.c.id == session_id)).first()
        return row_to_session(row) if row else None

    @staticmethod
    def get_session(session_id: str) -> Optional[SessionRecord]:
        with get_db_session() as db:
            return SessionPersistence.fetch(db, session_id)

    @staticmethod
    def list_sessions(status: Optional[SessionStatus] = None) -> List[SessionRecord]:
        query = select(sessions).order_by(sessions.c.starts_at.desc(), sessions.c.id.desc())
        if status is not None:
            query = query.where(sessions.c.status == status.value)
        with get_db_session() as db:
            rows = db.execute(query).all()
        return [row_to_session(r) for r in rows]

    @staticmethod
    def set_status(db: Session, session_id: str, status: SessionStatus) -> None:
        db.execute(update(sessions).where(sessions.c.id == session_id).values(status=status.value))

    @staticmethod
    def source_title(db: Session, source_id: str) -> Optional[str]:
        return db.execute(
            select(source_texts.c.title).where(source_texts.c.id == source_id)
        ).scalar_one_or_none()

    @staticmethod
    def stream_cap(db: Session, stream_id: Optional[str]) -> Optional[int]:
        """max_participants of the owning stream; None for manual sessions."""
        if not stream_id:
            return None
        return db.execute(
            select(feed_streams.c.max_participants).where(feed_streams.c.id == stream_id)
        ).scalar_one_or_none()

    @staticmethod
    def feed_item_exists(db: Session, stream_id: str, guid: str, published_at: datetime) -> bool:
        row = db.execute(
            select(sessions.c.id).where(
                and_(
                    sessions.c.stream_id == stream_id,
                    sessions.c.feed_item_guid == guid,
                    sessions.c.feed_item_published_at == as_utc(published_at),
                )
            )
        ).first()
        return row is not None

    @staticmethod
    def feed_guid_exists(db: Session, stream_id: str, guid: str) -> bool:
        row = db.execute(
            select(sessions.c.id).where(
                and_(sessions.c.stream_id == stream_id, sessions.c.feed_item_guid == guid)
            )
        ).first()
        return row is not None

    @staticmethod
    def fetch_poem(db: Session, session_id: str) -> Optional[Poem]:
        row = db.execute(
            select(published_poems).where(published_poems.c.session_id == session_id)
        ).first()
        return row_to_poem(row) if row else None

    @staticmethod
    def upsert_poem(db: Session, session_id: str, title: str, body: str, published_at: datetime) -> Poem:
        """Insert or overwrite the session's single poem."""
        published_at = as_utc(published_at)
        existing = db.execute(
            select(published_poems.c.id).where(published_poems.c.session_id == session_id)
        ).scalar_one_or_none()
        if existing:
            db.execute(
                update(published_poems)
                .where(published_poems.c.id == existing)
                .values(title=title, body=body, published_at=published_at)
            )
            poem_id = existing
        else:
            poem_id = str(uuid4())
            db.execute(
                insert(published_poems).values(
                    id=poem_id,
                    session_id=session_id,
                    title=title,
                    body=body,
                    published_at=published_at,
                    created_at=published_at,
                )
            )
        return Poem(poem_id=poem_id, session_id=session_id, title=title, body=body, published_at=published_at)

    @staticmethod
    def list_poems() -> List[Poem]:
        with get_db_session() as db:
            rows = db.execute(
                select(published_poems).order_by(
                    published_poems.c.published_at.desc(), published_poems.c.id.desc()
                )
            ).all()
        return [row_to_poem(r) for r in rows]
