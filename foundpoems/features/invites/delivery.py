"""
foundpoems/features/invites/delivery.py
Invite email delivery through the Resend HTTP API.

One batch call per session; if the batch is rejected every recipient is
retried individually. Nothing here raises into the caller: failures are
logged and counted.

Usage (queued):
    INVITE_QUEUE_ENABLED=true, then run `python -m foundpoems.workers.worker`
"""

import html
import threading
from typing import Dict, Optional

import httpx
from redis import Redis
from rq import Queue

from foundpoems.core.config import settings
from foundpoems.core.logging import log_event
from foundpoems.core.metrics import invite_deliveries_total
from foundpoems.models.invite import InviteBatch, InviteDelivery

INVITE_QUEUE_NAME = "invites"


def is_delivery_configured() -> bool:
    return bool(settings.RESEND_API_KEY and settings.INVITE_EMAIL_FROM)


def _message(batch: InviteBatch, delivery: InviteDelivery) -> Dict[str, object]:
    starts = batch.starts_at.isoformat()
    ends = batch.ends_at.isoformat()
    title = html.escape(batch.session_title)
    source = html.escape(batch.source_title)
    link = html.escape(delivery.join_url, quote=True)
    return {
        "from": settings.INVITE_EMAIL_FROM,
        "to": delivery.email,
        "subject": f"You're invited: {batch.session_title}",
        "html": (
            "<p>You have been invited to a Found Poems collaboration.</p>"
            f"<p><strong>Session:</strong> {title}</p>"
            f"<p><strong>Source:</strong> {source}</p>"
            f"<p><strong>Starts:</strong> {starts}</p>"
            f"<p><strong>Ends:</strong> {ends}</p>"
            f'<p><a href="{link}">Join session</a></p>'
        ),
        "text": (
            "You have been invited to a Found Poems collaboration.\n"
            f"Session: {batch.session_title}\n"
            f"Source: {batch.source_title}\n"
            f"Starts: {starts}\n"
            f"Ends: {ends}\n"
            f"Join: {delivery.join_url}"
        ),
    }


def _headers() -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {settings.RESEND_API_KEY}",
        "Content-Type": "application/json",
    }


def send_invite_emails(batch: InviteBatch, client: Optional[httpx.Client] = None) -> Dict[str, int]:
    """
    Deliver every invite in the batch.

    Args:
        batch: Session details plus (email, join link) pairs
        client: Optional httpx client (tests inject a MockTransport)

    Returns:
        Counts: {"sent": n, "failed": m}
    """
    outcome = {"sent": 0, "failed": 0}
    if not batch.deliveries:
        return outcome
    if not is_delivery_configured():
        log_event(
            "info",
            "invites.delivery_skipped",
            session_id=batch.session_id,
            event_type="invites.delivery_skipped",
            extra={"count": len(batch.deliveries)},
        )
        invite_deliveries_total.inc(labels={"outcome": "skipped"}, amount=len(batch.deliveries))
        return outcome

    base_url = settings.RESEND_API_URL.rstrip("/")
    messages = [_message(batch, d) for d in batch.deliveries]
    owns_client = client is None
    if client is None:
        client = httpx.Client(timeout=settings.EMAIL_TIMEOUT_SECONDS)

    try:
        try:
            response = client.post(f"{base_url}/emails/batch", json=messages, headers=_headers())
            response.raise_for_status()
            outcome["sent"] = len(messages)
            invite_deliveries_total.inc(labels={"outcome": "batch_sent"}, amount=len(messages))
            log_event(
                "info",
                "invites.batch_sent",
                session_id=batch.session_id,
                event_type="invites.batch_sent",
                extra={"count": len(messages), "status": response.status_code},
            )
            return outcome
        except httpx.HTTPError as exc:
            log_event(
                "warning",
                "invites.batch_failed",
                session_id=batch.session_id,
                event_type="invites.batch_failed",
                error_code="batch_failed",
                extra={"error": str(exc), "count": len(messages)},
            )

        for delivery, message in zip(batch.deliveries, messages):
            try:
                response = client.post(f"{base_url}/emails", json=message, headers=_headers())
                response.raise_for_status()
                outcome["sent"] += 1
                invite_deliveries_total.inc(labels={"outcome": "single_sent"})
            except httpx.HTTPError as exc:
                outcome["failed"] += 1
                invite_deliveries_total.inc(labels={"outcome": "failed"})
                log_event(
                    "error",
                    "invites.single_failed",
                    session_id=batch.session_id,
                    event_type="invites.single_failed",
                    error_code="delivery_failed",
                    extra={"email": delivery.email, "error": str(exc)},
                )
    finally:
        if owns_client:
            client.close()
    return outcome


def deliver_invite_batch(payload: dict) -> Dict[str, int]:
    """RQ job entry point; payload is InviteBatch.model_dump(mode="json")."""
    return send_invite_emails(InviteBatch.model_validate(payload))


def _safe_send(batch: InviteBatch) -> None:
    try:
        send_invite_emails(batch)
    except Exception as exc:
        log_event(
            "error",
            "invites.delivery_crashed",
            session_id=batch.session_id,
            error_code="delivery_crashed",
            extra={"error": str(exc)},
        )


def get_invite_queue() -> Queue:
    return Queue(INVITE_QUEUE_NAME, connection=Redis.from_url(settings.REDIS_URL))


def dispatch_invite_emails(batch: InviteBatch) -> Optional[str]:
    """
    Fire-and-forget delivery after the creating transaction committed.

    Returns:
        "queued", "thread", or None when there is nothing to send
    """
    if not batch.deliveries:
        return None

    if settings.INVITE_QUEUE_ENABLED:
        try:
            job = get_invite_queue().enqueue(
                deliver_invite_batch,
                batch.model_dump(mode="json"),
                job_timeout="5m",
                result_ttl=3600,
            )
            log_event(
                "info",
                "invites.enqueued",
                session_id=batch.session_id,
                event_type="invites.enqueued",
                extra={"job_id": job.id, "count": len(batch.deliveries)},
            )
            return "queued"
        except Exception as exc:
            # Redis unreachable: fall through to in-process delivery
            log_event(
                "warning",
                "invites.enqueue_failed",
                session_id=batch.session_id,
                error_code="enqueue_failed",
                extra={"error": str(exc)},
            )

    threading.Thread(target=_safe_send, args=(batch,), name=f"invites-{batch.session_id}", daemon=True).start()
    return "thread"
