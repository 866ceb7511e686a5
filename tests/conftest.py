import os
import tempfile
import uuid
from datetime import datetime, time, timedelta, timezone

_DB_DIR = tempfile.mkdtemp(prefix="checkin-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/test.db"
os.environ["RL_ENABLED"] = "false"
os.environ["NATS_ENABLED"] = "false"
os.environ["CHECKIN_TICKET_SECRET"] = "test-ticket-secret"
os.environ["SESSION_TIMEZONE"] = "UTC"

import pytest

from checkin_svc.core.qr import EPOCH, epoch_millis
from checkin_svc.db import async_session_maker, engine
from checkin_svc.models import Base, Event, TrackingMode

BANGKOK = (13.7563, 100.5018)
NEARBY = (13.7563, 100.5019)     # ~11 m east of the anchor
FAR_AWAY = (13.7600, 100.5018)   # ~410 m north of the anchor
SECRET = "s3cret-with-hyphens"
HOST_ID = uuid.UUID("7d7f8a52-2b7e-4c43-9d0f-0f3c1b1f6a11")


def at(hh, mm, ss=0, ms=0, day=(2026, 10, 18)):
    return datetime(*day, hh, mm, ss, ms * 1000, tzinfo=timezone.utc)


def epoch_ms(dt: datetime) -> int:
    return epoch_millis(dt)


def from_ms(ms: int) -> datetime:
    return EPOCH + timedelta(milliseconds=ms)


def make_event(**overrides) -> Event:
    fields = dict(
        id=uuid.uuid4(),
        host_id=HOST_ID,
        name="Morning session",
        latitude=BANGKOK[0],
        longitude=BANGKOK[1],
        radius_meters=50,
        start_time=time(0, 0, 0),
        end_time=time(23, 59, 59),
        qr_secret=SECRET,
        tracking_mode=TrackingMode.COUNT_ONLY,
        is_active=True,
    )
    fields.update(overrides)
    return Event(**fields)


@pytest.fixture
async def database():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield async_session_maker
    await engine.dispose()


@pytest.fixture
async def add_event(database):
    async def _add(**overrides) -> Event:
        event = make_event(**overrides)
        async with database() as db:
            db.add(event)
            await db.commit()
            await db.refresh(event)
        return event
    return _add
