"""
foundpoems/api/invites.py
Invite acceptance (participants arrive from the emailed join link).
"""

from fastapi import APIRouter

from foundpoems.core.database import utcnow
from foundpoems.features.invites.service import accept_invite
from foundpoems.models.invite import AcceptInviteRequest

router = APIRouter(prefix="/api/invites", tags=["invites"])


@router.post("/accept")
def accept_invite_endpoint(request: AcceptInviteRequest):
    """Mark the invite accepted (idempotent)"""
    invite = accept_invite(request, utcnow())
    return {"invite": invite.summary(), "sessionId": invite.session_id}
