from __future__ import annotations
import re
from datetime import date, datetime, time
from uuid import UUID, uuid4
from pydantic import BaseModel, Field, field_validator, model_validator

from .models import TrackingMode

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
ANONYMOUS_GUEST = "Anonymous Guest"

# --- events (organiser)

class EventCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    radius_meters: float = Field(default=50, gt=0)
    start_time: time
    end_time: time
    tracking_mode: TrackingMode = TrackingMode.COUNT_ONLY
    recurring_days: list[int] | None = None
    end_repeat_date: date | None = None
    event_date: date | None = None

    @field_validator("recurring_days")
    @classmethod
    def _weekdays(cls, v: list[int] | None):
        if v is not None and any(d < 0 or d > 6 for d in v):
            raise ValueError("recurring_days must be weekdays 0 (Monday) .. 6 (Sunday)")
        return sorted(set(v)) if v is not None else None

    @model_validator(mode="after")
    def _window(self):
        if self.start_time > self.end_time:
            raise ValueError("start_time must not be after end_time")
        if self.recurring_days and self.event_date:
            raise ValueError("an event is either recurring or on a single date")
        return self

class EventRead(BaseModel):
    id: UUID
    host_id: UUID
    name: str
    latitude: float
    longitude: float
    radius_meters: float
    start_time: time
    end_time: time
    tracking_mode: TrackingMode
    is_active: bool
    recurring_days: list[int] | None = None
    end_repeat_date: date | None = None
    event_date: date | None = None

    model_config = {"from_attributes": True}

class TokenResponse(BaseModel):
    token: str
    issued_at: int
    expires_at: int  # epoch millis
    url: str  # deep link; frontends encode this into the QR

class CountRead(BaseModel):
    event_id: UUID
    session_date: date
    count: int

# --- participants

class Participant(BaseModel):
    """Who is checking in: an authenticated user or a guest."""
    user_id: UUID | None = None
    name: str | None = None
    email: str | None = None
    device_id: str | None = None

    @classmethod
    def user(cls, user_id: UUID) -> "Participant":
        return cls(user_id=user_id)

    @classmethod
    def guest(cls, name: str | None = None, email: str | None = None, device_id: str | None = None) -> "Participant":
        return cls(name=(name or "").strip() or ANONYMOUS_GUEST, email=(email or "").strip() or None, device_id=device_id)

    @model_validator(mode="after")
    def _anonymous_device(self):
        # a guest with neither email nor device counts as a device of its own
        if self.user_id is None and not self.email and not self.device_id:
            self.device_id = uuid4().hex
        return self

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    @property
    def key(self) -> str:
        if self.user_id is not None:
            return f"user:{self.user_id}"
        if self.email:
            return f"guest:email:{self.email.lower()}"
        return f"guest:device:{self.device_id}"

class GuestRegistration(BaseModel):
    name: str
    email: str

    @field_validator("name")
    @classmethod
    def _name(cls, v: str):
        v = v.strip()
        if not v:
            raise ValueError("Please enter your name")
        return v

    @field_validator("email")
    @classmethod
    def _email(cls, v: str):
        v = v.strip()
        if not EMAIL_RE.match(v):
            raise ValueError("Please enter a valid email address")
        return v

class GuestIn(BaseModel):
    name: str | None = None
    email: str | None = None
    device_id: str | None = None

    @field_validator("email")
    @classmethod
    def _email(cls, v: str | None):
        if v is not None and v.strip() and not EMAIL_RE.match(v.strip()):
            raise ValueError("invalid email address")
        return v

# --- check-in protocol

class PositionIn(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: float | None = None

class EventContext(BaseModel):
    """Snapshot of the event a token was validated against (never carries the secret)."""
    event_id: UUID
    name: str
    latitude: float
    longitude: float
    radius_meters: float
    start_time: time
    end_time: time
    tracking_mode: TrackingMode
    token: str
    token_issued_at: int
    ticket: str | None = None

    @property
    def requires_registration(self) -> bool:
        return self.tracking_mode == TrackingMode.FULL_TRACKING

    @property
    def anchor(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)

class ValidateRequest(BaseModel):
    token: str  # raw token or deep link

class ValidateResponse(BaseModel):
    context: EventContext
    ticket: str
    ticket_expires_at: int

class CommitRequest(BaseModel):
    ticket: str
    position: PositionIn
    guest: GuestIn | None = None

class AttendanceRead(BaseModel):
    id: UUID
    event_id: UUID
    participant_key: str
    user_id: UUID | None = None
    guest_name: str | None = None
    guest_email: str | None = None
    latitude: float
    longitude: float
    distance_meters: float
    token_issued_at: int
    session_date: date
    checked_in_at: datetime

    model_config = {"from_attributes": True}

class FailureRead(BaseModel):
    reason: str
    detail: str
