from __future__ import annotations
import logging
import uuid
from datetime import date
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import AlreadyCheckedIn, StorageError
from ..models import AttendanceRecord

logger = logging.getLogger(__name__)

UNIQUE_NAME = "uq_attendance_per_participant_per_day"
_UNIQUE_COLUMNS = ("event_id", "participant_key", "session_date")


def _is_duplicate(exc: IntegrityError) -> bool:
    # postgres names the constraint; sqlite names the columns
    msg = str(exc.orig)
    if UNIQUE_NAME in msg:
        return True
    return "UNIQUE" in msg.upper() and all(c in msg for c in _UNIQUE_COLUMNS)


async def check_and_reserve(db: AsyncSession, record: AttendanceRecord) -> AttendanceRecord:
    """
    Insert the record, relying on the (event, participant, day) unique
    constraint so that concurrent writers cannot both succeed.

    Raises AlreadyCheckedIn when a record for the same key exists, and
    StorageError for any other write failure.
    """
    db.add(record)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        if _is_duplicate(exc):
            logger.info(
                "duplicate check-in for event %s participant %s on %s",
                record.event_id, record.participant_key, record.session_date,
            )
            raise AlreadyCheckedIn("already checked in for this event today") from exc
        raise StorageError(str(exc.orig)) from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("failed to write attendance for event %s", record.event_id)
        raise StorageError(str(exc)) from exc
    await db.refresh(record)
    return record


async def count_for_day(db: AsyncSession, event_id: uuid.UUID, day: date) -> int:
    q = select(func.count()).select_from(AttendanceRecord).where(
        AttendanceRecord.event_id == event_id, AttendanceRecord.session_date == day
    )
    return (await db.execute(q)).scalar_one()
