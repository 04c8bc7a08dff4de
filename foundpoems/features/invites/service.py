"""
foundpoems/features/invites/service.py
Invite issuance and acceptance.

Tokens are 16 random bytes, hex encoded. They are returned once (in the join
link handed to delivery) and never listed publicly.
"""

import secrets
from datetime import datetime
from typing import Iterable, List, Optional
from urllib.parse import urlencode
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.orm import Session

from foundpoems.core.config import settings
from foundpoems.core.database import as_utc, get_db_session, session_invites
from foundpoems.core.errors import NotFoundError
from foundpoems.core.logging import log_event
from foundpoems.models.invite import (
    AcceptInviteRequest,
    InviteBatch,
    InviteDelivery,
    InviteStatus,
    SessionInvite,
)
from foundpoems.models.session import SessionRecord


def create_invite_token() -> str:
    return secrets.token_hex(16)


def dedupe_emails(emails: Iterable[str]) -> List[str]:
    """Lowercase, strip, drop blanks and repeats; first occurrence order kept."""
    seen = set()
    result = []
    for email in emails:
        normalized = (email or "").strip().lower()
        if normalized and normalized not in seen:
            seen.add(normalized)
            result.append(normalized)
    return result


def _row_to_invite(row) -> SessionInvite:
    return SessionInvite(
        invite_id=row.id,
        session_id=row.session_id,
        email=row.email,
        token=row.token,
        status=InviteStatus(row.status),
        created_at=as_utc(row.created_at),
        responded_at=as_utc(row.responded_at),
    )


def issue_invites(db: Session, session_id: str, emails: Iterable[str], now: datetime) -> List[SessionInvite]:
    """Create one pending invite per distinct email, inside the caller's transaction."""
    invites = [
        SessionInvite(
            invite_id=str(uuid4()),
            session_id=session_id,
            email=email,
            token=create_invite_token(),
            status=InviteStatus.PENDING,
            created_at=as_utc(now),
        )
        for email in dedupe_emails(emails)
    ]
    if invites:
        db.execute(
            insert(session_invites),
            [
                {
                    "id": inv.invite_id,
                    "session_id": inv.session_id,
                    "email": inv.email,
                    "token": inv.token,
                    "status": inv.status.value,
                    "created_at": inv.created_at,
                }
                for inv in invites
            ],
        )
    return invites


def list_invites(db: Session, session_id: str) -> List[SessionInvite]:
    rows = db.execute(
        select(session_invites)
        .where(session_invites.c.session_id == session_id)
        .order_by(session_invites.c.created_at, session_invites.c.email)
    ).all()
    return [_row_to_invite(r) for r in rows]


def build_join_url(session_id: str, token: str, base_url: Optional[str] = None) -> str:
    base = (base_url or settings.INVITE_BASE_URL).rstrip("/")
    return f"{base}/join?{urlencode({'sessionId': session_id, 'token': token})}"


def build_invite_batch(record: SessionRecord, source_title: str, invites: List[SessionInvite]) -> InviteBatch:
    return InviteBatch(
        session_id=record.session_id,
        session_title=record.title,
        source_title=source_title,
        starts_at=record.starts_at,
        ends_at=record.ends_at,
        deliveries=[
            InviteDelivery(
                email=inv.email,
                token=inv.token,
                join_url=build_join_url(record.session_id, inv.token),
            )
            for inv in invites
        ],
    )


def find_invite(session_id: str, token: str) -> Optional[SessionInvite]:
    with get_db_session() as db:
        row = db.execute(
            select(session_invites).where(
                session_invites.c.session_id == session_id,
                session_invites.c.token == token,
            )
        ).first()
    return _row_to_invite(row) if row else None


def accept_invite(request: AcceptInviteRequest, now: datetime) -> SessionInvite:
    """
    Mark an invite accepted.

    Idempotent: accepting twice keeps the first responded_at.

    Raises:
        NotFoundError: no invite matches (session_id, token)
    """
    with get_db_session() as db:
        row = db.execute(
            select(session_invites).where(
                session_invites.c.session_id == request.session_id,
                session_invites.c.token == request.token,
            )
        ).first()
        if row is None:
            raise NotFoundError("Invite not found")

        if row.status != InviteStatus.ACCEPTED.value:
            db.execute(
                update(session_invites)
                .where(
                    session_invites.c.id == row.id,
                    session_invites.c.status == InviteStatus.PENDING.value,
                )
                .values(status=InviteStatus.ACCEPTED.value, responded_at=as_utc(now))
            )
            log_event(
                "info",
                "invite.accepted",
                session_id=request.session_id,
                event_type="invite.accepted",
                extra={"invite_id": row.id},
            )
        row = db.execute(select(session_invites).where(session_invites.c.id == row.id)).first()
        return _row_to_invite(row)
