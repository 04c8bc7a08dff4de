"""
foundpoems/features/streams/service.py
Feed stream administration: CRUD, public stream pages, roster joins, previews.
"""

import base64
import json
import logging
import re
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from sqlalchemy import and_, delete, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from foundpoems.core.config import settings
from foundpoems.core.database import (
    as_utc,
    feed_streams,
    get_db_session,
    published_poems,
    sessions,
    stream_collaborators,
    utcnow,
)
from foundpoems.core.errors import NotFoundError, ValidationError
from foundpoems.core.logging import log_event
from foundpoems.features.sessions.lifecycle import compute_ends_at
from foundpoems.features.streams.feed import build_tree, fetch_feed, next_start_time, normalize_entries
from foundpoems.features.words.ledger import tokenize_source
from foundpoems.models.stream import CreateStreamRequest, FeedStream, UpdateStreamRequest

logger = logging.getLogger("foundpoems")

ADMIN_PAGE_DEFAULT = 20
PUBLIC_PAGE_DEFAULT = 10
PAGE_MAX = 50

FeedFetcher = Callable[[str, float], Sequence[dict]]

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(value: str) -> str:
    base = _SLUG_RE.sub("-", value.lower().strip()).strip("-")
    return base or "stream"


def unique_slug(db: Session, title: str) -> str:
    base = slugify(title)
    slug = base
    suffix = 1
    while db.execute(select(feed_streams.c.id).where(feed_streams.c.slug == slug)).first():
        slug = f"{base}-{suffix}"
        suffix += 1
    return slug


def clamp_limit(raw: Optional[int], default: int) -> int:
    if not raw or raw < 1:
        return default
    return min(raw, PAGE_MAX)


def encode_cursor(payload: Dict[str, str]) -> str:
    return base64.urlsafe_b64encode(json.dumps(payload).encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(raw: Optional[str], time_key: str) -> Optional[Tuple[datetime, str]]:
    """(timestamp, id) from an opaque cursor; malformed cursors are ignored."""
    if not raw:
        return None
    try:
        padded = raw + "=" * (-len(raw) % 4)
        parsed = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
        stamp = datetime.fromisoformat(parsed[time_key])
        cursor_id = parsed["id"]
        if not isinstance(cursor_id, str):
            return None
        return as_utc(stamp), cursor_id
    except (ValueError, KeyError, TypeError) as exc:
        logger.warning("Invalid cursor", extra={"error": str(exc)})
        return None


def row_to_stream(row, collaborators: Optional[List[str]] = None) -> FeedStream:
    return FeedStream(
        stream_id=row.id,
        title=row.title,
        slug=row.slug,
        feed_url=row.feed_url,
        min_participants=row.min_participants,
        max_participants=row.max_participants,
        duration_minutes=row.duration_minutes,
        time_of_day=row.time_of_day,
        auto_publish=bool(row.auto_publish),
        content_paths=list(row.content_paths or []),
        last_item_guid=row.last_item_guid,
        last_item_published_at=as_utc(row.last_item_published_at),
        created_at=as_utc(row.created_at),
        collaborators=collaborators or [],
    )


def _roster(db: Session, stream_id: str) -> List[str]:
    rows = db.execute(
        select(stream_collaborators.c.email)
        .where(stream_collaborators.c.stream_id == stream_id)
        .order_by(stream_collaborators.c.created_at, stream_collaborators.c.email)
    ).all()
    return [r.email for r in rows]


def fetch_stream(db: Session, stream_id: str) -> Optional[FeedStream]:
    row = db.execute(select(feed_streams).where(feed_streams.c.id == stream_id)).first()
    return row_to_stream(row, _roster(db, stream_id)) if row else None


def get_stream(stream_id: str) -> FeedStream:
    with get_db_session() as db:
        stream = fetch_stream(db, stream_id)
    if stream is None:
        raise NotFoundError("Stream not found")
    return stream


def list_all_streams() -> List[FeedStream]:
    """Every stream with its roster, for the spawner."""
    with get_db_session() as db:
        rows = db.execute(select(feed_streams).order_by(feed_streams.c.created_at, feed_streams.c.id)).all()
        return [row_to_stream(r, _roster(db, r.id)) for r in rows]


def create_stream(request: CreateStreamRequest, now: Optional[datetime] = None) -> FeedStream:
    now = as_utc(now or utcnow())
    with get_db_session() as db:
        slug = unique_slug(db, request.title)
        stream_id = str(uuid4())
        db.execute(
            insert(feed_streams).values(
                id=stream_id,
                title=request.title,
                slug=slug,
                feed_url=request.feed_url,
                min_participants=request.min_participants,
                max_participants=request.max_participants,
                duration_minutes=request.duration_minutes,
                time_of_day=request.time_of_day,
                auto_publish=request.auto_publish,
                content_paths=list(request.content_paths),
                created_at=now,
            )
        )
        stream = fetch_stream(db, stream_id)

    log_event("info", "stream.created", stream_id=stream_id, event_type="stream.created", extra={"slug": slug})
    return stream


def update_stream(stream_id: str, request: UpdateStreamRequest) -> FeedStream:
    """
    Partial update. Unset fields keep their stored values; min <= max is
    checked against the merged result.
    """
    changes = request.model_dump(exclude_unset=True, exclude_none=True)
    with get_db_session() as db:
        existing = fetch_stream(db, stream_id)
        if existing is None:
            raise NotFoundError("Stream not found")
        merged_min = changes.get("min_participants", existing.min_participants)
        merged_max = changes.get("max_participants", existing.max_participants)
        if merged_min > merged_max:
            raise ValidationError("Min participants cannot exceed max participants")
        if changes:
            db.execute(update(feed_streams).where(feed_streams.c.id == stream_id).values(**changes))
        stream = fetch_stream(db, stream_id)

    log_event(
        "info",
        "stream.updated",
        stream_id=stream_id,
        event_type="stream.updated",
        extra={"fields": sorted(changes)},
    )
    return stream


def delete_stream(stream_id: str) -> None:
    """Remove roster rows, detach sessions and delete the stream in one transaction."""
    with get_db_session() as db:
        exists = db.execute(select(feed_streams.c.id).where(feed_streams.c.id == stream_id)).first()
        if not exists:
            raise NotFoundError("Stream not found")
        db.execute(delete(stream_collaborators).where(stream_collaborators.c.stream_id == stream_id))
        db.execute(update(sessions).where(sessions.c.stream_id == stream_id).values(stream_id=None))
        db.execute(delete(feed_streams).where(feed_streams.c.id == stream_id))

    log_event("info", "stream.deleted", stream_id=stream_id, event_type="stream.deleted")


def list_streams(limit: Optional[int] = None, cursor: Optional[str] = None) -> dict:
    """Admin listing, newest first, keyset-paginated on (created_at, id)."""
    limit = clamp_limit(limit, ADMIN_PAGE_DEFAULT)
    after = decode_cursor(cursor, "createdAt")

    query = select(feed_streams).order_by(feed_streams.c.created_at.desc(), feed_streams.c.id.desc())
    if after:
        stamp, cursor_id = after
        query = query.where(
            or_(
                feed_streams.c.created_at < stamp,
                and_(feed_streams.c.created_at == stamp, feed_streams.c.id < cursor_id),
            )
        )

    with get_db_session() as db:
        rows = db.execute(query.limit(limit + 1)).all()
        has_more = len(rows) > limit
        rows = rows[:limit]
        ids = [r.id for r in rows]
        collaborator_counts = dict(
            db.execute(
                select(stream_collaborators.c.stream_id, func.count())
                .where(stream_collaborators.c.stream_id.in_(ids))
                .group_by(stream_collaborators.c.stream_id)
            ).all()
        ) if ids else {}
        session_counts = dict(
            db.execute(
                select(sessions.c.stream_id, func.count())
                .where(sessions.c.stream_id.in_(ids))
                .group_by(sessions.c.stream_id)
            ).all()
        ) if ids else {}

    items = []
    for row in rows:
        data = row_to_stream(row).to_api()
        data["collaboratorCount"] = int(collaborator_counts.get(row.id, 0))
        data["sessionCount"] = int(session_counts.get(row.id, 0))
        items.append(data)

    next_cursor = None
    if has_more and rows:
        last = rows[-1]
        next_cursor = encode_cursor({"createdAt": as_utc(last.created_at).isoformat(), "id": last.id})
    return {"streams": items, "nextCursor": next_cursor}


def get_public_stream(slug: str, limit: Optional[int] = None, cursor: Optional[str] = None) -> dict:
    """Public stream page: summary plus its poems, newest first."""
    limit = clamp_limit(limit, PUBLIC_PAGE_DEFAULT)
    after = decode_cursor(cursor, "publishedAt")

    with get_db_session() as db:
        row = db.execute(select(feed_streams).where(feed_streams.c.slug == slug)).first()
        if row is None:
            raise NotFoundError("Stream not found")
        collaborator_count = db.execute(
            select(func.count()).select_from(stream_collaborators).where(stream_collaborators.c.stream_id == row.id)
        ).scalar_one()

        query = (
            select(published_poems)
            .join(sessions, sessions.c.id == published_poems.c.session_id)
            .where(sessions.c.stream_id == row.id)
            .order_by(published_poems.c.published_at.desc(), published_poems.c.id.desc())
        )
        if after:
            stamp, cursor_id = after
            query = query.where(
                or_(
                    published_poems.c.published_at < stamp,
                    and_(published_poems.c.published_at == stamp, published_poems.c.id < cursor_id),
                )
            )
        poem_rows = db.execute(query.limit(limit + 1)).all()

    has_more = len(poem_rows) > limit
    poem_rows = poem_rows[:limit]
    poems = [
        {
            "id": p.id,
            "sessionId": p.session_id,
            "title": p.title,
            "body": p.body,
            "publishedAt": as_utc(p.published_at).isoformat(),
        }
        for p in poem_rows
    ]
    next_cursor = None
    if has_more and poem_rows:
        last = poem_rows[-1]
        next_cursor = encode_cursor({"publishedAt": as_utc(last.published_at).isoformat(), "id": last.id})

    stream = row_to_stream(row)
    summary = {
        "id": stream.stream_id,
        "title": stream.title,
        "slug": stream.slug,
        "rssUrl": stream.feed_url,
        "maxParticipants": stream.max_participants,
        "minParticipants": stream.min_participants,
        "durationMinutes": stream.duration_minutes,
        "timeOfDay": stream.time_of_day,
        "autoPublish": stream.auto_publish,
        "collaboratorCount": int(collaborator_count),
    }
    return {"stream": summary, "poems": poems, "nextCursor": next_cursor}


def join_stream(slug: str, email: str, now: Optional[datetime] = None) -> bool:
    """
    Add an email to the stream roster. Idempotent.

    Returns:
        True if the email was added, False if it was already on the roster
    """
    email = email.strip().lower()
    now = as_utc(now or utcnow())
    try:
        with get_db_session() as db:
            stream_id = db.execute(select(feed_streams.c.id).where(feed_streams.c.slug == slug)).scalar_one_or_none()
            if stream_id is None:
                raise NotFoundError("Stream not found")
            exists = db.execute(
                select(stream_collaborators.c.id).where(
                    stream_collaborators.c.stream_id == stream_id,
                    stream_collaborators.c.email == email,
                )
            ).first()
            if exists:
                return False
            db.execute(
                insert(stream_collaborators).values(
                    id=str(uuid4()), stream_id=stream_id, email=email, created_at=now
                )
            )
    except IntegrityError:
        # Concurrent join of the same email
        return False

    log_event("info", "stream.joined", stream_id=stream_id, event_type="stream.joined")
    return True


def preview_stream(
    request: CreateStreamRequest,
    fetcher: Optional[FeedFetcher] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Fetch the feed and show the session its newest item would spawn.

    Raises:
        FeedError: feed unreachable or unparseable
        ValidationError: no item with usable content
    """
    now = as_utc(now or utcnow())
    fetch = fetcher or fetch_feed
    entries = fetch(request.feed_url, settings.FEED_FETCH_TIMEOUT_SECONDS)
    items = normalize_entries(entries, request.title, request.content_paths, now)
    if not items:
        raise ValidationError("Feed has no items with usable content")

    latest = items[-1]
    starts_at = next_start_time(request.time_of_day, latest.published_at, settings.STREAM_TIMEZONE)
    ends_at = compute_ends_at(starts_at, request.duration_minutes)
    return {
        "preview": {
            "sessionTitle": latest.title,
            "itemTitle": latest.title,
            "itemGuid": latest.guid,
            "itemPublishedAt": latest.published_at.isoformat(),
            "startsAt": starts_at.isoformat(),
            "endsAt": ends_at.isoformat(),
            "durationMinutes": request.duration_minutes,
            "timeOfDay": request.time_of_day,
            "sourceTitle": latest.title,
            "sourceBody": latest.content,
            "wordCount": len(tokenize_source(latest.content)),
            "autoPublish": request.auto_publish,
        },
        "tree": build_tree(latest.raw),
        "selectedPaths": list(request.content_paths),
    }


def advance_cursor(db: Session, stream_id: str, guid: str, published_at: datetime) -> bool:
    """Move the cursor forward; a stale or equal timestamp leaves it untouched."""
    published_at = as_utc(published_at)
    result = db.execute(
        update(feed_streams)
        .where(
            feed_streams.c.id == stream_id,
            or_(
                feed_streams.c.last_item_published_at.is_(None),
                feed_streams.c.last_item_published_at < published_at,
            ),
        )
        .values(last_item_guid=guid, last_item_published_at=published_at)
    )
    return result.rowcount == 1
