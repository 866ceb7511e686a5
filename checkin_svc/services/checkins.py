from __future__ import annotations
import logging
import uuid
from datetime import date, datetime, timezone, tzinfo
from zoneinfo import ZoneInfo
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..core.geo import distance_meters, is_within_radius
from ..core.nats import publish_checkin
from ..errors import OutsideRadius
from ..models import AttendanceRecord, Event
from ..schemas import Participant, PositionIn
from .guard import check_and_reserve

logger = logging.getLogger(__name__)
settings = get_settings()

def reporting_tz() -> tzinfo:
    return ZoneInfo(settings.session_timezone)

def session_date_for(instant: datetime, tz: tzinfo | None = None) -> date:
    return instant.astimezone(tz or reporting_tz()).date()

def _now():
    return datetime.now(timezone.utc)

async def record_attendance(
    db: AsyncSession,
    *,
    event: Event,
    participant: Participant,
    position: PositionIn,
    token: str,
    token_issued_at: int,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> AttendanceRecord:
    """
    Geofence the reported position against the event anchor and write the
    attendance row through the duplicate guard.
    """
    now = now or _now()
    dist = distance_meters((event.latitude, event.longitude), (position.latitude, position.longitude))
    if not is_within_radius(dist, event.radius_meters):
        raise OutsideRadius(f"{round(dist)} m from the venue, must be within {event.radius_meters:g} m")

    record = AttendanceRecord(
        event_id=event.id,
        participant_key=participant.key,
        user_id=participant.user_id,
        guest_name=participant.name if participant.is_guest else None,
        guest_email=participant.email if participant.is_guest else None,
        latitude=position.latitude,
        longitude=position.longitude,
        distance_meters=dist,
        token_used=token,
        token_issued_at=token_issued_at,
        session_date=session_date_for(now, tz),
        checked_in_at=now,
    )
    record = await check_and_reserve(db, record)
    logger.info("check-in recorded for event %s (%s, %.1f m)", event.id, record.participant_key, dist)

    # consumers key on the record id, the commit itself is already durable
    try:
        await publish_checkin({
            "event_id": str(event.id),
            "record_id": str(record.id),
            "participant_key": record.participant_key,
            "session_date": record.session_date.isoformat(),
            "checked_at": now.isoformat().replace("+00:00", "Z"),
        })
    except Exception:
        logger.warning("could not publish check-in for event %s", event.id, exc_info=True)
    return record

async def list_attendance(db: AsyncSession, event_id: uuid.UUID, day: date | None = None) -> list[AttendanceRecord]:
    q = select(AttendanceRecord).where(AttendanceRecord.event_id == event_id)
    if day is not None:
        q = q.where(AttendanceRecord.session_date == day)
    return list((await db.execute(q.order_by(AttendanceRecord.checked_in_at.asc()))).scalars().all())
