"""Pydantic schemas for MedLove Reminder Service.

This module defines request/response schemas for the API and the typed
records the scheduling core works with. ORM rows are validated into these
records once, in the store adapter; naive datetimes coming back from the
database are treated as UTC.
"""

from pydantic import AfterValidator, BaseModel, BeforeValidator, Field
from datetime import date as date_type, datetime, timezone
from typing import List, Optional
from typing_extensions import Annotated
import enum
import re

TIME_PATTERN = r'^([01]\d|2[0-3]):[0-5]\d$'
_TIME_RE = re.compile(TIME_PATTERN)


def as_utc(value):
    """Normalize datetimes to UTC; naive values are taken to be UTC already.

    SQLite drops tzinfo on write, so everything is stored as UTC.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return value


def _enum_value(value):
    if isinstance(value, enum.Enum):
        return value.value
    return value


def _validate_times(times):
    seen = []
    for t in times:
        if not _TIME_RE.match(t):
            raise ValueError(f"invalid time '{t}', expected HH:MM (24-hour)")
        if t not in seen:
            seen.append(t)
    return seen


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]
TimeList = Annotated[List[str], AfterValidator(_validate_times)]
EnumValue = BeforeValidator(_enum_value)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

class UserCreate(BaseModel):
    """Schema for registering a user profile."""

    id: str = Field(..., min_length=1, description="User ID issued by the auth provider")
    email: str = Field(
        ...,
        pattern=r'^[^@\s]+@[^@\s]+\.[^@\s]+$',
        description="Address reminders are sent to",
        examples=["jane@example.com"]
    )
    display_name: str = Field(default="", max_length=100)


class UserProfile(BaseModel):
    """Subject profile as read by the core."""

    id: str
    email: str
    display_name: Optional[str] = ""
    notification_count: int = 0
    last_notification_sent: Optional[UtcDatetime] = None
    created_at: Optional[UtcDatetime] = None

    @property
    def greeting_name(self) -> str:
        """Name used in emails, falling back to the mailbox name."""
        return self.display_name or self.email.split("@")[0] or "there"

    class Config:
        from_attributes = True


# ---------------------------------------------------------------------------
# Medications
# ---------------------------------------------------------------------------

class MedicationCreate(BaseModel):
    """Schema for creating a medication schedule entry."""

    name: str = Field(..., min_length=1, max_length=200, examples=["Vitamin D"])
    dosage: str = Field(..., min_length=1, max_length=200, examples=["1 tablet"])
    frequency: str = Field(default="daily", pattern="^(daily|weekly|custom)$")
    times: TimeList = Field(
        ...,
        min_length=1,
        description="HH:MM (24-hour) times",
        examples=[["09:00", "21:00"]]
    )
    start_date: Optional[date_type] = None
    end_date: Optional[date_type] = None
    notes: str = ""
    color: str = ""
    icon: str = ""
    is_active: bool = True


class MedicationUpdate(BaseModel):
    """Schema for updating a medication - only provided fields change."""

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    dosage: Optional[str] = Field(None, min_length=1, max_length=200)
    frequency: Optional[str] = Field(None, pattern="^(daily|weekly|custom)$")
    times: Optional[TimeList] = Field(None, min_length=1)
    start_date: Optional[date_type] = None
    end_date: Optional[date_type] = None
    notes: Optional[str] = None
    color: Optional[str] = None
    icon: Optional[str] = None
    is_active: Optional[bool] = None


class MedicationEntry(BaseModel):
    """Medication schedule entry (also the API response shape)."""

    id: str
    user_id: str
    name: str
    dosage: str
    frequency: Annotated[str, EnumValue] = "daily"
    times: List[str] = Field(default_factory=list)
    is_active: bool = True
    taken_on_date: Optional[date_type] = None
    last_taken_at: Optional[UtcDatetime] = None
    start_date: Optional[date_type] = None
    end_date: Optional[date_type] = None
    notes: Optional[str] = ""
    color: Optional[str] = ""
    icon: Optional[str] = ""
    created_at: Optional[UtcDatetime] = None
    updated_at: Optional[UtcDatetime] = None

    class Config:
        from_attributes = True


# ---------------------------------------------------------------------------
# Reminder records and streaks
# ---------------------------------------------------------------------------

class ReminderStatus(str, enum.Enum):
    REMINDER_SENT = "reminder_sent"
    TAKEN = "taken"


class ReminderRecord(BaseModel):
    """One medication log entry: a reminder that was sent, or a taken dose."""

    id: Optional[str] = None
    user_id: str
    medication_id: str
    medication_name: Optional[str] = ""
    dosage: Optional[str] = ""
    scheduled_time: Optional[str] = None
    date: date_type
    status: Annotated[ReminderStatus, EnumValue]
    created_at: Optional[UtcDatetime] = None
    taken_at: Optional[UtcDatetime] = None

    class Config:
        from_attributes = True
        use_enum_values = True


class StreakRecord(BaseModel):
    """Adherence streak for one (user, medication) pair."""

    user_id: str
    medication_id: str
    current_streak: int = Field(default=0, ge=0)
    longest_streak: int = Field(default=0, ge=0)
    last_taken: Optional[UtcDatetime] = None
    updated_at: Optional[UtcDatetime] = None

    class Config:
        from_attributes = True


class DeliveryReceipt(BaseModel):
    """What the transport reports back for an accepted message."""

    message_id: str
    to_address: str
    accepted_at: datetime


class DueMatch(BaseModel):
    """A medication entry that is due, with the slot that matched."""

    entry: MedicationEntry
    time: str
    date: date_type


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------

class DoseTakenResponse(BaseModel):
    medication_id: str
    date: date_type
    streak: StreakRecord
    message: str = "Medication marked as taken!"


class ManualReminderRequest(BaseModel):
    medication_id: str = Field(..., min_length=1)


class TickResponse(BaseModel):
    """Result of one externally triggered sweep."""

    checked_at: datetime
    dispatched: int
    follow_ups_sent: int


class StatsResponse(BaseModel):
    """Dashboard numbers for one user."""

    streak: int = Field(..., description="Best current streak across medications")
    compliance: float = Field(..., description="Percent of expected doses taken in the last 7 days")
    weekly_count: int
    today_completed: int
    today_total: int
