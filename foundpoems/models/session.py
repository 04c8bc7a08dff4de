"""
foundpoems/models/session.py
Session, word ledger and poem models.
"""

import re
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class SessionStatus(str, Enum):
    """Session lifecycle: scheduled -> active -> closed -> published"""

    SCHEDULED = "scheduled"
    ACTIVE = "active"
    CLOSED = "closed"
    PUBLISHED = "published"


class SessionPhase(str, Enum):
    """What a participant sees: before, inside, or after the window."""

    LOBBY = "lobby"
    ACTIVE = "active"
    ENDED = "ended"


class SourceInput(BaseModel):
    title: str = Field(min_length=3)
    body: str = Field(min_length=50, description="Source body should include enough text for collaboration")


class CreateSessionRequest(BaseModel):
    """Request to create a manual session"""

    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=3)
    starts_at: datetime = Field(alias="startsAt")
    duration_minutes: int = Field(alias="durationMinutes", ge=1, le=60)
    source: SourceInput
    invite_emails: List[str] = Field(default_factory=list, alias="inviteEmails", max_length=100)

    @field_validator("title")
    @classmethod
    def _strip_title(cls, v: str) -> str:
        if len(v.strip()) < 3:
            raise ValueError("Title must be at least 3 characters")
        return v.strip()

    @field_validator("invite_emails")
    @classmethod
    def _validate_emails(cls, v: List[str]) -> List[str]:
        cleaned = []
        for email in v:
            email = email.strip()
            if not EMAIL_RE.match(email):
                raise ValueError(f"Invalid email: {email}")
            cleaned.append(email)
        return cleaned


class StatusChangeRequest(BaseModel):
    status: SessionStatus


class PublishRequest(BaseModel):
    title: str = Field(min_length=3)
    body: str = Field(min_length=3)


class SessionRecord(BaseModel):
    """Session metadata as stored"""

    model_config = ConfigDict(frozen=True)

    session_id: str
    title: str
    status: SessionStatus
    starts_at: datetime
    ends_at: datetime
    source_id: str
    stream_id: Optional[str] = None
    feed_item_guid: Optional[str] = None
    created_at: Optional[datetime] = None


class Word(BaseModel):
    """One token of a session's word ledger"""

    model_config = ConfigDict(frozen=True)

    word_id: str
    session_id: str
    index: int
    text: str
    hidden: bool = False
    hidden_at: Optional[datetime] = None
    actor_id: Optional[str] = None

    def to_api(self) -> dict:
        return {
            "id": self.word_id,
            "index": self.index,
            "text": self.text,
            "hidden": self.hidden,
            "hiddenAt": self.hidden_at.isoformat() if self.hidden_at else None,
            "actorId": self.actor_id,
        }


class RedactionEvent(BaseModel):
    """Change notification emitted after a redaction, for fan-out."""

    model_config = ConfigDict(frozen=True)

    word_id: str
    session_id: str
    hidden_at: datetime
    changed: bool = Field(description="False when the word was already hidden")

    def to_broadcast(self) -> dict:
        return {"id": self.word_id, "hiddenAt": self.hidden_at.isoformat()}


class Poem(BaseModel):
    model_config = ConfigDict(frozen=True)

    poem_id: str
    session_id: str
    title: str
    body: str
    published_at: datetime

    def to_api(self) -> dict:
        return {
            "id": self.poem_id,
            "sessionId": self.session_id,
            "title": self.title,
            "body": self.body,
            "publishedAt": self.published_at.isoformat(),
        }


class CreatedSession(BaseModel):
    """Result of creating a session with its ledger and invites"""

    model_config = ConfigDict(frozen=True)

    session_id: str
    invite_count: int
    word_count: int
    starts_at: datetime
    ends_at: datetime
