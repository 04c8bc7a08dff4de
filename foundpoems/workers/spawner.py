"""Feed spawner.

Polls every feed stream, creates one session per new feed item and advances
the stream cursor.

Usage:
    python -m foundpoems.workers.spawner --once
    python -m foundpoems.workers.spawner --loop

First poll of a stream (no cursor yet) is governed by FEED_FIRST_POLL_MODE:
- latest: only the newest item spawns a session (default)
- none: nothing spawns; the cursor is set to the newest item
- all: every item with content spawns a session
"""
from __future__ import annotations

import argparse
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from foundpoems.core.config import settings
from foundpoems.core.database import as_utc, get_db_session, utcnow
from foundpoems.core.logging import configure_logging, log_event
from foundpoems.core.metrics import feed_polls_total, sessions_spawned_total
from foundpoems.features.invites.delivery import dispatch_invite_emails
from foundpoems.features.invites.service import build_invite_batch
from foundpoems.features.sessions.persistence import SessionPersistence
from foundpoems.features.streams.feed import fetch_feed, next_start_time, normalize_entries
from foundpoems.features.streams.service import advance_cursor, list_all_streams
from foundpoems.models.stream import FeedItem, FeedStream

FeedFetcher = Callable[[str, float], Sequence[dict]]

FIRST_POLL_LATEST = "latest"
FIRST_POLL_NONE = "none"
FIRST_POLL_ALL = "all"


def select_new_items(
    items: List[FeedItem],
    last_published_at: Optional[datetime],
    first_poll_mode: str = FIRST_POLL_LATEST,
) -> List[FeedItem]:
    """
    Items to spawn sessions for, oldest first.

    `items` must already be sorted ascending by published_at.
    """
    if last_published_at is not None:
        last = as_utc(last_published_at)
        return [item for item in items if item.published_at > last]
    if not items or first_poll_mode == FIRST_POLL_NONE:
        return []
    if first_poll_mode == FIRST_POLL_ALL:
        return list(items)
    return [items[-1]]


def spawn_session_for_item(stream: FeedStream, item: FeedItem, now: datetime) -> Optional[str]:
    """
    Create source, session, roster invites and ledger for one item in one transaction.

    Undated items carry the poll time, so they are matched on guid alone.

    Returns:
        New session id, or None if this item already produced a session
    """
    starts_at = next_start_time(stream.time_of_day, item.published_at, settings.STREAM_TIMEZONE)
    with get_db_session() as db:
        if item.dated:
            seen = SessionPersistence.feed_item_exists(db, stream.stream_id, item.guid, item.published_at)
        else:
            seen = SessionPersistence.feed_guid_exists(db, stream.stream_id, item.guid)
        if seen:
            return None
        record, created, invites = SessionPersistence.insert_bundle(
            db,
            title=item.title,
            starts_at=starts_at,
            duration_minutes=stream.duration_minutes,
            source_title=item.title,
            source_body=item.content,
            invite_emails=stream.collaborators,
            now=now,
            stream_id=stream.stream_id,
            feed_item_guid=item.guid,
            feed_item_published_at=item.published_at,
        )

    sessions_spawned_total.inc()
    log_event(
        "info",
        "stream.session_spawned",
        session_id=created.session_id,
        stream_id=stream.stream_id,
        event_type="stream.session_spawned",
        extra={
            "item_guid": item.guid,
            "starts_at": created.starts_at.isoformat(),
            "word_count": created.word_count,
        },
    )
    if invites:
        dispatch_invite_emails(build_invite_batch(record, item.title, invites))
    return created.session_id


def sync_stream(
    stream: FeedStream,
    now: datetime,
    fetcher: FeedFetcher,
    first_poll_mode: str,
) -> int:
    """Poll one stream. Returns the number of sessions created."""
    entries = fetcher(stream.feed_url, settings.FEED_FETCH_TIMEOUT_SECONDS)
    items = normalize_entries(entries, stream.title, stream.content_paths, now)
    if not items:
        return 0

    new_items = select_new_items(items, stream.last_item_published_at, first_poll_mode)
    created = 0
    for item in new_items:
        if spawn_session_for_item(stream, item, now):
            created += 1

    # Bootstrap "none" mode still records where the feed stood
    marker = new_items[-1] if new_items else (items[-1] if stream.last_item_published_at is None else None)
    if marker is not None:
        with get_db_session() as db:
            advance_cursor(db, stream.stream_id, marker.guid, marker.published_at)
    return created


def sync_streams(
    now: Optional[datetime] = None,
    fetcher: Optional[FeedFetcher] = None,
    first_poll_mode: Optional[str] = None,
) -> Dict[str, int]:
    """
    One spawner cycle over every stream.

    A failing stream is logged and skipped; the others are still polled.
    """
    now = as_utc(now or utcnow())
    fetch = fetcher or fetch_feed
    mode = (first_poll_mode or settings.FEED_FIRST_POLL_MODE).lower()
    result = {"streams": 0, "created": 0, "failed": 0}

    for stream in list_all_streams():
        result["streams"] += 1
        try:
            created = sync_stream(stream, now, fetch, mode)
            result["created"] += created
            feed_polls_total.inc(labels={"outcome": "ok"})
        except Exception as exc:
            result["failed"] += 1
            feed_polls_total.inc(labels={"outcome": "error"})
            log_event(
                "error",
                "stream.sync_failed",
                stream_id=stream.stream_id,
                event_type="stream.sync_failed",
                error_code="feed_sync_failed",
                extra={"error": str(exc), "feed_url": stream.feed_url},
            )
    return result


def main() -> None:
    parser = argparse.ArgumentParser(description="Feed stream spawner")
    parser.add_argument("--once", action="store_true", help="Poll every stream once and exit")
    parser.add_argument("--loop", action="store_true", help="Run in continuous loop")
    parser.add_argument(
        "--sleep",
        type=float,
        default=settings.FEED_POLL_INTERVAL_SECONDS,
        help="Seconds to sleep between polls (when --loop)",
    )
    args = parser.parse_args()
    configure_logging(settings.ENV)

    if args.once:
        print(f"[spawner] {sync_streams()}")
        return

    print(f"[spawner] Starting loop (sleep={args.sleep}s). CTRL+C to stop.")
    try:
        while True:
            result = sync_streams()
            if result["created"]:
                print(f"[spawner] Created {result['created']} sessions")
            time.sleep(args.sleep)
    except KeyboardInterrupt:
        print("[spawner] Stopped")


if __name__ == "__main__":
    main()
