"""
Storage models
==============

Entities shared by every backend adapter: users, items, feedback and the
patch objects used for partial updates.
"""

from datetime import datetime, timezone
from typing import List, NamedTuple, Optional

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    return normalize_timestamp(datetime.now(timezone.utc))


def normalize_timestamp(value: datetime) -> datetime:
    """
    Convert a timestamp to aware UTC with millisecond precision.

    Naive values are taken as UTC. Millisecond precision is the finest
    resolution every backend (MongoDB included) stores exactly.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def to_naive_utc(value: datetime) -> datetime:
    """Strip tzinfo for storage columns that hold naive UTC."""
    return normalize_timestamp(value).replace(tzinfo=None)


def dedupe(values: List[str]) -> List[str]:
    """Drop repeated values, keeping first-occurrence order."""
    return list(dict.fromkeys(values))


class User(BaseModel):
    """User metadata."""
    user_id: str = Field(..., description="User ID")
    labels: List[str] = Field(default_factory=list, description="User labels")
    subscribe: List[str] = Field(default_factory=list, description="Subscribed categories")
    comment: str = Field("", description="Free-text comment")

    @field_validator("labels", "subscribe")
    @classmethod
    def _dedupe(cls, value: List[str]) -> List[str]:
        return dedupe(value)


class UserPatch(BaseModel):
    """Partial update on a user. None means "leave untouched"."""
    labels: Optional[List[str]] = None
    subscribe: Optional[List[str]] = None
    comment: Optional[str] = None

    @field_validator("labels", "subscribe")
    @classmethod
    def _dedupe(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return None if value is None else dedupe(value)


class Item(BaseModel):
    """Item metadata."""
    item_id: str = Field(..., description="Item ID")
    is_hidden: bool = Field(False, description="Hidden items are skipped by default listings")
    categories: List[str] = Field(default_factory=list, description="Item categories")
    timestamp: datetime = Field(default_factory=utc_now, description="Creation timestamp (UTC)")
    labels: List[str] = Field(default_factory=list, description="Item labels")
    comment: str = Field("", description="Free-text comment")

    @field_validator("labels", "categories")
    @classmethod
    def _dedupe(cls, value: List[str]) -> List[str]:
        return dedupe(value)

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return normalize_timestamp(value)


class ItemPatch(BaseModel):
    """Partial update on an item. None means "leave untouched"."""
    is_hidden: Optional[bool] = None
    categories: Optional[List[str]] = None
    timestamp: Optional[datetime] = None
    labels: Optional[List[str]] = None
    comment: Optional[str] = None

    @field_validator("labels", "categories")
    @classmethod
    def _dedupe(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return None if value is None else dedupe(value)

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: Optional[datetime]) -> Optional[datetime]:
        return None if value is None else normalize_timestamp(value)


class FeedbackKey(NamedTuple):
    """Composite key of a feedback event. Tuple order is the paging order."""
    feedback_type: str
    user_id: str
    item_id: str


class Feedback(BaseModel):
    """A timestamped interaction between a user and an item."""
    feedback_type: str = Field(..., description="Feedback type, e.g. like, read")
    user_id: str = Field(..., description="User ID")
    item_id: str = Field(..., description="Item ID")
    timestamp: datetime = Field(default_factory=utc_now, description="Event timestamp (UTC)")
    comment: str = Field("", description="Free-text comment")

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return normalize_timestamp(value)

    @property
    def key(self) -> FeedbackKey:
        return FeedbackKey(self.feedback_type, self.user_id, self.item_id)


class Score(BaseModel):
    """A (candidate id, score) pair read from the neighbor cache."""
    id: str = Field(..., description="Candidate ID")
    score: float = Field(..., description="Similarity or recommendation score")


def sort_feedback(feedback: List[Feedback]) -> List[Feedback]:
    """Sort feedback from latest to oldest, ties by key ascending."""
    ordered = sorted(feedback, key=lambda f: f.key)
    ordered.sort(key=lambda f: f.timestamp, reverse=True)
    return ordered
