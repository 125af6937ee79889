import json
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

SCHEDULE_EVENT = "newsletter.schedule"
SCHEDULE_DELETED_EVENT = "newsletter.schedule.deleted"


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    OTHER = "other"

    @classmethod
    def parse(cls, value) -> "Frequency":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.OTHER


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED_RESCHEDULED = "completed_rescheduled"
    COMPLETED_NO_RESCHEDULE = "completed_no_reschedule"
    CANCELLED = "cancelled"
    FAILED = "failed"


def normalize_categories(value) -> list[str]:
    """Accept a list of categories or its JSON-encoded text form."""
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError:
            return [c.strip() for c in text.split(",") if c.strip()]
        if isinstance(decoded, str):
            return [decoded]
        return [str(c) for c in decoded]
    return [str(c) for c in value]


class NewsletterRequest(BaseModel):
    """Payload of a newsletter.schedule event."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    email: str = Field(min_length=1)
    categories: list[str]
    # Stored as received. compute_next_run maps it onto Frequency.
    frequency: str = Frequency.OTHER.value

    @field_validator("categories", mode="before")
    @classmethod
    def _decode_categories(cls, value):
        return normalize_categories(value)

    @field_validator("frequency", mode="before")
    @classmethod
    def _keep_frequency(cls, value):
        if value is None:
            return Frequency.OTHER.value
        if isinstance(value, Frequency):
            return value.value
        return str(value)

    def to_payload(self) -> dict:
        return {
            "userId": self.user_id,
            "email": self.email,
            "categories": list(self.categories),
            "frequency": self.frequency,
        }


class Article(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    description: str = ""
    url: str
    source: str = ""


class UserPreferences(BaseModel):
    user_id: str = ""
    categories: list[str] = Field(default_factory=list)
    frequency: str = Frequency.WEEKLY.value
    email: str
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("categories", mode="before")
    @classmethod
    def _decode_categories(cls, value):
        return normalize_categories(value)


class ScheduledEvent(BaseModel):
    id: str
    name: str
    user_id: str
    payload: dict
    run_at: datetime
    status: str = "pending"
    attempts: int = 0
    error_message: str = ""


class NewsletterResult(BaseModel):
    content: str = ""
    article_count: int = 0
    categories: list[str] = Field(default_factory=list)
    email_sent: bool = False
    next_scheduled: bool = False
    success: bool = False
    state: JobState = JobState.PENDING
    next_run_at: datetime | None = None
    error: str = ""
