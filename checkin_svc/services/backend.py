from __future__ import annotations
from datetime import datetime, timezone, tzinfo
from typing import Callable
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import get_settings
from ..db import get_event
from ..errors import EventNotFound, StorageError
from ..schemas import AttendanceRead, EventContext, Participant, PositionIn
from .checkins import record_attendance, reporting_tz
from .validation import validate_token

settings = get_settings()

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

class LocalBackend:
    """Runs validation and commit in-process against the service database."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = _utcnow,
        tz: tzinfo | None = None,
        ttl_ms: int | None = None,
    ):
        self.session_maker = session_maker
        self.clock = clock
        self.tz = tz or reporting_tz()
        self.ttl_ms = ttl_ms or settings.token_ttl_ms

    async def validate(self, raw: str) -> EventContext:
        try:
            async with self.session_maker() as db:
                return await validate_token(
                    raw,
                    now=self.clock(),
                    lookup=lambda event_id: get_event(db, event_id),
                    tz=self.tz,
                    ttl_ms=self.ttl_ms,
                )
        except SQLAlchemyError as exc:
            raise StorageError(str(exc)) from exc

    async def commit(self, context: EventContext, participant: Participant, position: PositionIn) -> AttendanceRead:
        try:
            async with self.session_maker() as db:
                event = await get_event(db, context.event_id)
                if event is None or not event.is_active:
                    raise EventNotFound(f"no active event {context.event_id}")
                record = await record_attendance(
                    db,
                    event=event,
                    participant=participant,
                    position=position,
                    token=context.token,
                    token_issued_at=context.token_issued_at,
                    now=self.clock(),
                    tz=self.tz,
                )
                return AttendanceRead.model_validate(record)
        except SQLAlchemyError as exc:
            raise StorageError(str(exc)) from exc
