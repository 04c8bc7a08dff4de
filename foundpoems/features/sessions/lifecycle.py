"""
foundpoems/features/sessions/lifecycle.py
Session lifecycle: scheduled -> active -> closed -> published.

Pure functions of (status, window, now); persistence lives in persistence.py.
"""

from datetime import datetime, timedelta
from typing import Dict, FrozenSet

from foundpoems.core.errors import ConflictError
from foundpoems.models.session import SessionPhase, SessionStatus

ALLOWED_TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    SessionStatus.SCHEDULED: frozenset({SessionStatus.ACTIVE, SessionStatus.CLOSED}),
    SessionStatus.ACTIVE: frozenset({SessionStatus.CLOSED}),
    SessionStatus.CLOSED: frozenset({SessionStatus.PUBLISHED}),
    SessionStatus.PUBLISHED: frozenset(),
}

# Statuses from which the publish operation may upsert a poem
PUBLISHABLE: FrozenSet[SessionStatus] = frozenset({SessionStatus.CLOSED, SessionStatus.PUBLISHED})


def compute_ends_at(starts_at: datetime, duration_minutes: int) -> datetime:
    return starts_at + timedelta(minutes=duration_minutes)


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def check_transition(current: SessionStatus, target: SessionStatus) -> bool:
    """
    Validate a manual status change.

    Returns:
        False when target == current (no-op), True when the edge exists.

    Raises:
        ConflictError: edge not in the transition table
    """
    if current == target:
        return False
    if not can_transition(current, target):
        raise ConflictError(f"Cannot transition {current.value} → {target.value}")
    return True


def check_publishable(current: SessionStatus) -> None:
    if current not in PUBLISHABLE:
        raise ConflictError(
            f"Publishing requires a closed session (status: {current.value})"
        )


def session_phase(
    status: SessionStatus,
    starts_at: datetime,
    ends_at: datetime,
    now: datetime,
) -> SessionPhase:
    """Participant-facing phase. Uses the clock so it does not lag the sweeper."""
    if status in (SessionStatus.CLOSED, SessionStatus.PUBLISHED) or now >= ends_at:
        return SessionPhase.ENDED
    if now >= starts_at:
        return SessionPhase.ACTIVE
    return SessionPhase.LOBBY
