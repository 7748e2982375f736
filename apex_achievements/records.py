"""Durable record types shared by the ledger, the engine and the leaderboards."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Literal, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

BadgeCategory = Literal["completion", "mastery", "consistency", "special"]
Rarity = Literal["common", "rare", "epic", "legendary"]
Period = Literal["all_time", "weekly", "monthly"]

GLOBAL_SCOPE = "global"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class PointsTransaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    transaction_id: str = Field(default_factory=_new_id)
    user_id: str
    amount: int
    source: str
    description: str = ""
    course_slug: Optional[str] = None
    award_key: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)

    @field_validator("created_at")
    @classmethod
    def _utc_created_at(cls, value: datetime) -> datetime:
        return as_utc(value)


class Achievement(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    badge_id: str
    name: str
    category: BadgeCategory
    rarity: Rarity
    icon: str = ""
    points: int
    earned_at: datetime = Field(default_factory=_now)

    @field_validator("earned_at")
    @classmethod
    def _utc_earned_at(cls, value: datetime) -> datetime:
        return as_utc(value)


class LeaderboardEntry(BaseModel):
    scope: str
    period_key: str
    user_id: str
    score: int
    rank: int = 0
    updated_at: datetime = Field(default_factory=_now)

    @field_validator("updated_at")
    @classmethod
    def _utc_updated_at(cls, value: datetime) -> datetime:
        return as_utc(value)


class AuditRecord(BaseModel):
    user_id: Optional[str] = None
    event_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    actor: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)


class Standing(NamedTuple):
    rank: int
    score: int


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_course_slug(course_slug: Optional[str]) -> Optional[str]:
    if course_slug is None:
        return None
    slug = course_slug.strip().lower()
    return slug or None


def course_scope(course_slug: str) -> str:
    slug = normalize_course_slug(course_slug)
    if not slug:
        raise ValueError("Course slug cannot be empty.")
    return f"course:{slug}"


def parse_scope(scope: str) -> Optional[str]:
    """Validate a scope string and return its course slug (``None`` for the global scope)."""
    if scope == GLOBAL_SCOPE:
        return None
    prefix, _, slug = scope.partition(":")
    if prefix != "course" or not slug.strip():
        raise ValueError(f"Unsupported leaderboard scope: {scope!r}")
    return normalize_course_slug(slug)


def normalize_user_id(user_id: str) -> str:
    normalized = user_id.strip()
    if not normalized:
        raise ValueError("User id cannot be empty.")
    return normalized


__all__ = [
    "Achievement",
    "AuditRecord",
    "BadgeCategory",
    "GLOBAL_SCOPE",
    "LeaderboardEntry",
    "Period",
    "PointsTransaction",
    "Rarity",
    "Standing",
    "as_utc",
    "course_scope",
    "normalize_course_slug",
    "normalize_user_id",
    "parse_scope",
]
