"""Domain models for users, adventures and notifications.

Records travel through the store as JSON documents with camelCase keys;
these models accept either the document keys or the Python attribute names
and dump back to the document shape via ``to_record``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_serializer, field_validator
from pydantic.alias_generators import to_camel

USERS = "users"
ADVENTURES = "adventures"
NOTIFICATIONS = "notifications"


class AdventurePrivacy(str, enum.Enum):
    PUBLIC = "Public"
    FOLLOWERS = "Followers"
    TWINS = "Twins"


class ActivityStatus(str, enum.Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"


class NotificationType(str, enum.Enum):
    INTEREST = "interest"
    ATTENDANCE_REQUEST = "attendanceRequest"
    ATTENDANCE_CONFIRMED = "attendanceConfirmed"
    RATE_EXPERIENCE = "rateExperience"
    NEW_FOLLOWER = "newFollower"


class _Document(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_record(self) -> dict[str, Any]:
        """Dump to the store document shape (camelCase, unset fields omitted)."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PrivacySettings(_Document):
    show_follow_lists: bool = True
    show_stats: bool = True
    show_completed_activities: bool = True
    allow_twin_search: bool = True


class ActivityLogEntry(_Document):
    adventure_id: str
    status: ActivityStatus


class User(_Document):
    id: str
    name: str = ""
    username: str = ""
    following: set[str] = Field(default_factory=set)
    followers: set[str] = Field(default_factory=set)
    is_private: bool = False
    privacy_settings: PrivacySettings = Field(default_factory=PrivacySettings)
    birthday: date | None = None
    activity_log: dict[str, ActivityStatus] = Field(default_factory=dict)
    average_rating: float | None = None
    total_ratings: int = Field(default=0, ge=0)

    @field_validator("following", "followers", mode="after")
    @classmethod
    def _drop_self(cls, value: set[str], info: ValidationInfo) -> set[str]:
        user_id = info.data.get("id")
        return {v for v in value if v != user_id}

    @field_serializer("following", "followers")
    def _sorted_ids(self, value: set[str]) -> list[str]:
        return sorted(value)

    def log_entry(self, adventure_id: str) -> ActivityLogEntry | None:
        status = self.activity_log.get(adventure_id)
        if status is None:
            return None
        return ActivityLogEntry(adventure_id=adventure_id, status=status)

    def activity_entries(self) -> list[ActivityLogEntry]:
        return [
            ActivityLogEntry(adventure_id=adventure_id, status=status)
            for adventure_id, status in self.activity_log.items()
        ]


class Adventure(_Document):
    id: str
    author_id: str
    title: str = ""
    privacy: AdventurePrivacy | str = Field(default=AdventurePrivacy.PUBLIC, union_mode="left_to_right")
    start_date: datetime
    end_date: datetime | None = None
    interested_users: set[str] = Field(default_factory=set)

    @field_validator("privacy", mode="before")
    @classmethod
    def _default_privacy(cls, value: Any) -> Any:
        # Records written before post-level privacy existed carry no value.
        if value is None or value == "":
            return AdventurePrivacy.PUBLIC
        return value

    @field_validator("start_date", "end_date", mode="after")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        return _utc(value) if value is not None else None

    @field_serializer("interested_users")
    def _sorted_ids(self, value: set[str]) -> list[str]:
        return sorted(value)

    @property
    def effective_end(self) -> datetime:
        """End instant used by the attendance time gate."""
        return self.end_date or self.start_date


class Notification(_Document):
    id: str
    type: NotificationType
    recipient_id: str
    sender_id: str
    adventure_id: str | None = None
    attendee_id: str | None = None
    read: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("created_at", mode="after")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return _utc(value)


@dataclass(frozen=True)
class HydratedAdventure:
    """An adventure paired with its author's user record."""

    adventure: Adventure
    author: User
