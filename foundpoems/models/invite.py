"""
foundpoems/models/invite.py
Session invite models: token issuance and acceptance.
"""

from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime
from enum import Enum
from typing import Optional


class InviteStatus(str, Enum):
    """Invite lifecycle: pending -> accepted"""

    PENDING = "pending"
    ACCEPTED = "accepted"


class SessionInvite(BaseModel):
    """Invite to join a session"""

    model_config = ConfigDict(frozen=True)

    invite_id: str = Field(description="UUID")
    session_id: str
    email: str
    token: str = Field(description="Unguessable join token (never listed publicly)")
    status: InviteStatus = Field(default=InviteStatus.PENDING)
    created_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None

    def summary(self) -> dict:
        """Safe summary (no token)"""
        return {
            "id": self.invite_id,
            "email": self.email,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "respondedAt": self.responded_at.isoformat() if self.responded_at else None,
        }


class AcceptInviteRequest(BaseModel):
    """Request to accept invite"""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId", min_length=1)
    token: str = Field(min_length=1, description="Token received in the invite link")


class InviteDelivery(BaseModel):
    """One (email, join link) pair handed to the delivery collaborator"""

    email: str
    token: str
    join_url: str


class InviteBatch(BaseModel):
    """Everything the email collaborator needs to send a session's invites"""

    session_id: str
    session_title: str
    source_title: str
    starts_at: datetime
    ends_at: datetime
    deliveries: list[InviteDelivery]
