from __future__ import annotations
import secrets
import uuid
from datetime import date, datetime, time, timezone
from enum import Enum
from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from sqlalchemy import CheckConstraint, Enum as SqlEnum, ForeignKey, Index, JSON, UniqueConstraint
from sqlalchemy.types import BigInteger, Boolean, Date, DateTime, Float, String, Time

Base = declarative_base()

def utcnow():
    return datetime.now(timezone.utc)

def new_secret() -> str:
    return secrets.token_urlsafe(24)

class TrackingMode(str, Enum):
    COUNT_ONLY = "count_only"
    FULL_TRACKING = "full_tracking"

class Event(Base):
    __tablename__ = "events"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    host_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    radius_meters: Mapped[float] = mapped_column(Float, default=50, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    qr_secret: Mapped[str] = mapped_column(String(128), default=new_secret, nullable=False)
    tracking_mode: Mapped[TrackingMode] = mapped_column(
        SqlEnum(TrackingMode, values_callable=lambda e: [m.value for m in e]),
        default=TrackingMode.COUNT_ONLY, nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # either a weekly recurrence (0 = Monday) or a single date; neither means every day
    recurring_days: Mapped[list[int] | None] = mapped_column(JSON, nullable=True)
    end_repeat_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    event_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("radius_meters > 0", name="ck_events_radius_pos"),
        CheckConstraint("start_time <= end_time", name="ck_events_time_window"),
    )

    @property
    def requires_registration(self) -> bool:
        return self.tracking_mode == TrackingMode.FULL_TRACKING

class AttendanceRecord(Base):
    __tablename__ = "attendance_records"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    event_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    participant_key: Mapped[str] = mapped_column(String(320), nullable=False)
    user_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    guest_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    guest_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    distance_meters: Mapped[float] = mapped_column(Float, nullable=False)
    token_used: Mapped[str] = mapped_column(String(512), nullable=False)
    token_issued_at: Mapped[int] = mapped_column(BigInteger, nullable=False)  # epoch millis
    session_date: Mapped[date] = mapped_column(Date, nullable=False)
    checked_in_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("event_id", "participant_key", "session_date", name="uq_attendance_per_participant_per_day"),
        Index("ix_attendance_event_day", "event_id", "session_date"),
    )
