"""
foundpoems/models/stream.py
Feed stream models: configuration validation, cursor state, normalized feed items.
"""

import re
from datetime import datetime
from typing import Any, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

TIME_OF_DAY_RE = re.compile(r"^([0-1]?\d|2[0-3]):[0-5]\d$")


def _check_time_of_day(v: str) -> str:
    v = v.strip()
    if not TIME_OF_DAY_RE.match(v):
        raise ValueError("Use HH:MM (24h, e.g. 9:00 or 09:00)")
    return v


def _check_feed_url(v: str) -> str:
    v = v.strip()
    parsed = urlparse(v)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("Feed URL must be a valid http(s) URL")
    return v


class StreamFields(BaseModel):
    """Field rules shared by create and update"""

    model_config = ConfigDict(populate_by_name=True)

    title: Optional[str] = Field(default=None, min_length=3)
    feed_url: Optional[str] = Field(default=None, alias="rssUrl")
    max_participants: Optional[int] = Field(default=None, alias="maxParticipants", ge=1, le=1000)
    min_participants: Optional[int] = Field(default=None, alias="minParticipants", ge=1, le=1000)
    duration_minutes: Optional[int] = Field(default=None, alias="durationMinutes", ge=1, le=180)
    time_of_day: Optional[str] = Field(default=None, alias="timeOfDay")
    auto_publish: Optional[bool] = Field(default=None, alias="autoPublish")
    content_paths: Optional[List[str]] = Field(default=None, alias="contentPaths")

    @field_validator("title")
    @classmethod
    def _strip_title(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if len(v.strip()) < 3:
            raise ValueError("Title must be at least 3 characters")
        return v.strip()

    @field_validator("feed_url")
    @classmethod
    def _feed_url(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else _check_feed_url(v)

    @field_validator("time_of_day")
    @classmethod
    def _time_of_day(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else _check_time_of_day(v)


class CreateStreamRequest(StreamFields):
    """Request to create a stream; every field except the optional ones is required."""

    title: str = Field(min_length=3)
    feed_url: str = Field(alias="rssUrl")
    max_participants: int = Field(alias="maxParticipants", ge=1, le=1000)
    min_participants: int = Field(alias="minParticipants", ge=1, le=1000)
    duration_minutes: int = Field(alias="durationMinutes", ge=1, le=180)
    time_of_day: str = Field(alias="timeOfDay")
    auto_publish: bool = Field(default=False, alias="autoPublish")
    content_paths: List[str] = Field(default_factory=list, alias="contentPaths")

    @model_validator(mode="after")
    def _min_le_max(self):
        if self.min_participants > self.max_participants:
            raise ValueError("Min participants cannot exceed max participants")
        return self


class UpdateStreamRequest(StreamFields):
    """Partial update; min/max are re-checked against the merged record."""


class JoinStreamRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        from foundpoems.models.session import EMAIL_RE

        v = v.strip()
        if not EMAIL_RE.match(v):
            raise ValueError("Invalid email")
        return v


class FeedStream(BaseModel):
    """Stream configuration plus the spawner's cursor"""

    model_config = ConfigDict(frozen=True)

    stream_id: str
    title: str
    slug: str
    feed_url: str
    min_participants: int
    max_participants: int
    duration_minutes: int
    time_of_day: str
    auto_publish: bool = False
    content_paths: List[str] = Field(default_factory=list)
    last_item_guid: Optional[str] = None
    last_item_published_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    collaborators: List[str] = Field(default_factory=list)

    def to_api(self) -> dict:
        return {
            "id": self.stream_id,
            "title": self.title,
            "slug": self.slug,
            "rssUrl": self.feed_url,
            "minParticipants": self.min_participants,
            "maxParticipants": self.max_participants,
            "durationMinutes": self.duration_minutes,
            "timeOfDay": self.time_of_day,
            "autoPublish": self.auto_publish,
            "contentPaths": list(self.content_paths),
            "lastItemGuid": self.last_item_guid,
            "lastItemPublishedAt": self.last_item_published_at.isoformat() if self.last_item_published_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class FeedItem(BaseModel):
    """Normalized feed entry consumed by the spawner"""

    model_config = ConfigDict(frozen=True)

    guid: str
    title: str
    content: str
    published_at: datetime
    dated: bool = Field(default=True, description="False when published_at was filled in with the poll time")
    raw: Optional[Any] = Field(default=None, description="Tagged tree of the original entry")
