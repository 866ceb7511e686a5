import asyncio
import uuid
from datetime import date

import pytest

from checkin_svc.errors import AlreadyCheckedIn
from checkin_svc.models import AttendanceRecord
from checkin_svc.schemas import Participant
from checkin_svc.services.checkins import list_attendance
from checkin_svc.services.guard import check_and_reserve, count_for_day

from .conftest import BANGKOK

DAY = date(2026, 10, 18)


def record(event_id, participant: Participant, day=DAY):
    return AttendanceRecord(
        event_id=event_id,
        participant_key=participant.key,
        user_id=participant.user_id,
        guest_name=participant.name,
        guest_email=participant.email,
        latitude=BANGKOK[0],
        longitude=BANGKOK[1],
        distance_meters=0.0,
        token_used="CHECKIN-x-y-1",
        token_issued_at=1,
        session_date=day,
    )


async def test_second_commit_is_rejected(database, add_event):
    event = await add_event()
    alice = Participant.user(uuid.uuid4())
    async with database() as db:
        first = await check_and_reserve(db, record(event.id, alice))
        assert first.id is not None
        with pytest.raises(AlreadyCheckedIn):
            await check_and_reserve(db, record(event.id, alice))
        assert await count_for_day(db, event.id, DAY) == 1


async def test_concurrent_commits_yield_one_record(database, add_event):
    event = await add_event()
    alice = Participant.user(uuid.uuid4())

    async def attempt():
        async with database() as db:
            try:
                await check_and_reserve(db, record(event.id, alice))
                return "ok"
            except AlreadyCheckedIn:
                return "dup"

    results = await asyncio.gather(attempt(), attempt(), attempt())
    assert sorted(results) == ["dup", "dup", "ok"]
    async with database() as db:
        assert await count_for_day(db, event.id, DAY) == 1


async def test_key_includes_day_and_event(database, add_event):
    event, other = await add_event(), await add_event()
    alice = Participant.user(uuid.uuid4())
    async with database() as db:
        await check_and_reserve(db, record(event.id, alice))
        await check_and_reserve(db, record(event.id, alice, day=date(2026, 10, 19)))
        await check_and_reserve(db, record(other.id, alice))
        await check_and_reserve(db, record(event.id, Participant.user(uuid.uuid4())))
        assert await count_for_day(db, event.id, DAY) == 2
        assert len(await list_attendance(db, event.id)) == 3
        assert len(await list_attendance(db, event.id, DAY)) == 2


async def test_guest_email_is_case_insensitive(database, add_event):
    event = await add_event()
    async with database() as db:
        await check_and_reserve(db, record(event.id, Participant.guest("Ann", "ann@example.org")))
        with pytest.raises(AlreadyCheckedIn):
            await check_and_reserve(db, record(event.id, Participant.guest("Ann B.", "ANN@example.org")))


def test_participant_keys():
    uid = uuid.uuid4()
    assert Participant.user(uid).key == f"user:{uid}"
    assert Participant.guest("Ann", "Ann@Example.org").key == "guest:email:ann@example.org"
    assert Participant.guest("Ann", None, "dev-1").key == "guest:device:dev-1"
    anon = Participant.guest("  Ann  ")
    assert anon.key.startswith("guest:device:")
    assert anon.key != Participant.guest("Ann").key
    assert Participant.guest().name == "Anonymous Guest"


async def test_anonymous_guests_are_counted_separately(database, add_event):
    event = await add_event()
    async with database() as db:
        await check_and_reserve(db, record(event.id, Participant.guest()))
        await check_and_reserve(db, record(event.id, Participant.guest()))
        assert await count_for_day(db, event.id, DAY) == 2
