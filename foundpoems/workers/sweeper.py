"""Lifecycle sweeper.

Advances sessions by the clock and auto-publishes closed sessions of
auto-publish streams. One cycle is a plain function of `now` and the stored
records, so it can run from the app lifespan or from the command line.

Usage:
    python -m foundpoems.workers.sweeper --once
    python -m foundpoems.workers.sweeper --loop
"""
from __future__ import annotations

import argparse
import time
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import and_, select, true, update

from foundpoems.core.config import settings
from foundpoems.core.database import as_utc, feed_streams, get_db_session, published_poems, sessions, utcnow
from foundpoems.core.logging import configure_logging, log_event
from foundpoems.core.metrics import poems_published_total, session_transitions_total, sweeps_total
from foundpoems.features.sessions.persistence import SessionPersistence
from foundpoems.features.words.ledger import visible_text
from foundpoems.models.session import SessionStatus


def refresh_session_statuses(now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Apply the time-driven transitions in one transaction.

    scheduled with starts_at <= now < ends_at  -> active
    scheduled|active with ends_at <= now       -> closed
    """
    now = as_utc(now or utcnow())
    with get_db_session() as db:
        activated = db.execute(
            update(sessions)
            .where(
                sessions.c.status == SessionStatus.SCHEDULED.value,
                sessions.c.starts_at <= now,
                sessions.c.ends_at > now,
            )
            .values(status=SessionStatus.ACTIVE.value)
        ).rowcount
        closed = db.execute(
            update(sessions)
            .where(
                sessions.c.status.in_([SessionStatus.SCHEDULED.value, SessionStatus.ACTIVE.value]),
                sessions.c.ends_at <= now,
            )
            .values(status=SessionStatus.CLOSED.value)
        ).rowcount

    if activated:
        session_transitions_total.inc(labels={"to_status": SessionStatus.ACTIVE.value}, amount=activated)
    if closed:
        session_transitions_total.inc(labels={"to_status": SessionStatus.CLOSED.value}, amount=closed)
    return {"activated": activated, "closed": closed}


def _auto_publish_candidates() -> List[str]:
    with get_db_session() as db:
        rows = db.execute(
            select(sessions.c.id)
            .join(feed_streams, feed_streams.c.id == sessions.c.stream_id)
            .outerjoin(published_poems, published_poems.c.session_id == sessions.c.id)
            .where(
                and_(
                    sessions.c.status == SessionStatus.CLOSED.value,
                    feed_streams.c.auto_publish == true(),
                    published_poems.c.id.is_(None),
                )
            )
            .order_by(sessions.c.ends_at)
        ).all()
    return [r.id for r in rows]


def auto_publish_session(session_id: str, now: datetime) -> bool:
    """Publish one closed session from its surviving words. False if it moved on meanwhile."""
    with get_db_session() as db:
        record = SessionPersistence.fetch(db, session_id)
        if record is None or record.status != SessionStatus.CLOSED:
            return False
        if SessionPersistence.fetch_poem(db, session_id) is not None:
            return False
        body = visible_text(db, session_id)
        SessionPersistence.upsert_poem(db, session_id, record.title, body, now)
        SessionPersistence.set_status(db, session_id, SessionStatus.PUBLISHED)

    poems_published_total.inc(labels={"mode": "auto"})
    session_transitions_total.inc(labels={"to_status": SessionStatus.PUBLISHED.value})
    log_event(
        "info",
        "session.auto_published",
        session_id=session_id,
        event_type="session.auto_published",
        extra={"word_count": len(body.split())},
    )
    return True


def auto_publish_closed_sessions(now: Optional[datetime] = None) -> Dict[str, int]:
    """Each session in its own transaction; one failure does not stop the rest."""
    now = as_utc(now or utcnow())
    published = 0
    failed = 0
    for session_id in _auto_publish_candidates():
        try:
            if auto_publish_session(session_id, now):
                published += 1
        except Exception as exc:
            failed += 1
            log_event(
                "error",
                "session.auto_publish_failed",
                session_id=session_id,
                error_code="auto_publish_failed",
                extra={"error": str(exc)},
            )
    return {"published": published, "failed": failed}


def run_sweep(now: Optional[datetime] = None) -> Dict[str, int]:
    """
    One full cycle: status refresh, then auto-publish.

    The two steps fail independently; sessions already closed are still
    published when the status refresh fails.
    """
    now = as_utc(now or utcnow())
    result = {"activated": 0, "closed": 0, "published": 0, "failed": 0}
    steps = (("refresh", refresh_session_statuses), ("auto_publish", auto_publish_closed_sessions))
    failed_steps = []
    for step, fn in steps:
        try:
            result.update(fn(now))
        except Exception as exc:
            failed_steps.append(step)
            log_event(
                "error",
                "sweep.step_failed",
                event_type="sweep.step_failed",
                error_code="sweep_failed",
                extra={"step": step, "error": str(exc)},
            )

    sweeps_total.inc(labels={"outcome": "error" if failed_steps else "ok"})
    if any(result.values()):
        log_event("info", "sweep.completed", event_type="sweep.completed", extra=result)
    return result


def main() -> None:
    parser = argparse.ArgumentParser(description="Session lifecycle sweeper")
    parser.add_argument("--once", action="store_true", help="Run one sweep and exit")
    parser.add_argument("--loop", action="store_true", help="Run in continuous loop")
    parser.add_argument(
        "--sleep",
        type=float,
        default=settings.STATUS_REFRESH_INTERVAL_SECONDS,
        help="Seconds to sleep between sweeps (when --loop)",
    )
    args = parser.parse_args()
    configure_logging(settings.ENV)

    if args.once:
        result = run_sweep()
        print(f"[sweeper] {result}")
        return

    print(f"[sweeper] Starting loop (sleep={args.sleep}s). CTRL+C to stop.")
    try:
        while True:
            try:
                run_sweep()
            except Exception:
                pass  # logged by run_sweep
            time.sleep(args.sleep)
    except KeyboardInterrupt:
        print("[sweeper] Stopped")


if __name__ == "__main__":
    main()
