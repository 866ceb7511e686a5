import asyncio
import uuid
from datetime import time, timezone

import pytest

from checkin_svc.core.qr import issue_token
from checkin_svc.errors import FailureReason, LocationUnavailable, StorageError
from checkin_svc.models import TrackingMode
from checkin_svc.schemas import Participant
from checkin_svc.services.backend import LocalBackend
from checkin_svc.services.guard import count_for_day
from checkin_svc.services.session import (
    PERMISSION_DENIED,
    POSITION_UNAVAILABLE,
    TIMEOUT,
    CheckInSession,
    InvalidTransition,
    PositionError,
    PositionReading,
    SessionState,
)

from .conftest import FAR_AWAY, NEARBY, at, epoch_ms

NOW = at(9, 15)
HERE = PositionReading(*NEARBY, accuracy=5.0)
THERE = PositionReading(*FAR_AWAY, accuracy=5.0)


@pytest.fixture
def backend(database):
    return LocalBackend(database, clock=lambda: NOW, tz=timezone.utc)


def token_for(event, when=NOW):
    return issue_token(event.id, event.qr_secret, now=epoch_ms(when)).token


class Positions:
    """Hand-fed position source; tracks whether its consumer went away."""

    def __init__(self):
        self.queue = asyncio.Queue()
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        try:
            return await self.queue.get()
        except asyncio.CancelledError:
            self.closed = True
            raise


async def test_count_only_goes_straight_to_ready(backend, add_event):
    event = await add_event()
    session = CheckInSession(backend, device_id="phone-1")
    assert await session.receive_token(token_for(event)) is SessionState.READY
    session.on_position(HERE)
    assert session.can_commit
    assert await session.commit() is SessionState.SUCCESS
    assert session.record.participant_key == "guest:device:phone-1"
    assert session.record.distance_meters == pytest.approx(10.8, abs=0.5)


async def test_full_tracking_registers_first(backend, add_event):
    event = await add_event(tracking_mode=TrackingMode.FULL_TRACKING)
    session = CheckInSession(backend)
    assert await session.receive_token(token_for(event)) is SessionState.REGISTERING
    with pytest.raises(InvalidTransition):
        await session.commit()

    assert session.submit_registration("Ann", "ann@example") is False
    assert session.state is SessionState.REGISTERING
    assert "valid email" in session.validation_message
    assert session.submit_registration("   ", "ann@example.org") is False
    assert session.state is SessionState.REGISTERING

    assert session.submit_registration("Ann", "ann@example.org") is True
    assert session.state is SessionState.READY
    assert session.validation_message is None
    session.on_position(HERE)
    assert await session.commit() is SessionState.SUCCESS
    assert session.record.guest_email == "ann@example.org"
    assert session.record.guest_name == "Ann"


async def test_known_user_skips_registration(backend, add_event):
    event = await add_event(tracking_mode=TrackingMode.FULL_TRACKING)
    user_id = uuid.uuid4()
    session = CheckInSession(backend, participant=Participant.user(user_id))
    assert await session.receive_token(token_for(event)) is SessionState.READY
    session.on_position(HERE)
    await session.commit()
    assert session.record.user_id == user_id


@pytest.mark.parametrize("token,reason", [
    ("CHECKIN-onlytwoparts", FailureReason.INVALID_TOKEN),
    ("hello", FailureReason.INVALID_TOKEN),
    (f"CHECKIN-{uuid.uuid4()}-whatever-{epoch_ms(NOW)}", FailureReason.EVENT_NOT_FOUND),
])
async def test_validation_failures(backend, database, token, reason):
    session = CheckInSession(backend)
    assert await session.receive_token(token) is SessionState.FAILED
    assert session.failure is reason


async def test_expired_and_out_of_hours(backend, add_event):
    event = await add_event()
    session = CheckInSession(backend)
    await session.receive_token(token_for(event, at(9, 14, 49)))
    assert session.failure is FailureReason.TOKEN_EXPIRED

    late = await add_event(start_time=time(7, 0), end_time=time(8, 0))
    session.reset()
    await session.receive_token(token_for(late))
    assert session.failure is FailureReason.OUTSIDE_TIME_WINDOW


async def test_readings_before_ready_are_not_used(backend, add_event):
    event = await add_event()
    session = CheckInSession(backend)
    session.on_position(HERE)
    await session.receive_token(token_for(event))
    assert session.last_position == HERE
    assert session.distance is None
    assert not session.can_commit
    with pytest.raises(LocationUnavailable):
        await session.commit()
    assert session.state is SessionState.READY
    assert session.advisory is FailureReason.LOCATION_UNAVAILABLE

    session.on_position(HERE)
    assert session.advisory is None
    assert await session.commit() is SessionState.SUCCESS


async def test_latest_reading_wins(backend, add_event):
    event = await add_event()
    session = CheckInSession(backend)
    await session.receive_token(token_for(event))
    session.on_position(THERE)
    assert not session.can_commit
    session.on_position(HERE)
    assert session.can_commit
    session.on_position(THERE)
    assert await session.commit() is SessionState.FAILED
    assert session.failure is FailureReason.OUTSIDE_RADIUS


async def test_second_session_same_day_is_already_checked_in(backend, database, add_event):
    event = await add_event()
    user = Participant.user(uuid.uuid4())
    for expected in (SessionState.SUCCESS, SessionState.FAILED):
        session = CheckInSession(backend, participant=user)
        await session.receive_token(token_for(event))
        session.on_position(HERE)
        assert await session.commit() is expected
    assert session.failure is FailureReason.ALREADY_CHECKED_IN
    async with database() as db:
        assert await count_for_day(db, event.id, NOW.date()) == 1


async def test_double_tap_commits_once(backend, database, add_event):
    event = await add_event()
    session = CheckInSession(backend, participant=Participant.user(uuid.uuid4()))
    await session.receive_token(token_for(event))
    session.on_position(HERE)
    results = await asyncio.gather(session.commit(), session.commit(), return_exceptions=True)
    assert SessionState.SUCCESS in results
    assert any(isinstance(r, InvalidTransition) for r in results)
    async with database() as db:
        assert await count_for_day(db, event.id, NOW.date()) == 1


async def test_storage_failure_keeps_session_ready(backend, add_event):
    event = await add_event()

    class FlakyBackend:
        failures = 1

        async def validate(self, raw):
            return await backend.validate(raw)

        async def commit(self, context, participant, position):
            if self.failures:
                self.failures -= 1
                raise StorageError("connection reset")
            return await backend.commit(context, participant, position)

    session = CheckInSession(FlakyBackend())
    await session.receive_token(token_for(event))
    session.on_position(HERE)
    with pytest.raises(StorageError):
        await session.commit()
    assert session.state is SessionState.READY
    assert await session.commit() is SessionState.SUCCESS


async def test_position_errors_are_advisory(backend, add_event):
    event = await add_event()
    session = CheckInSession(backend)
    session.on_position_error(PERMISSION_DENIED)
    assert session.state is SessionState.SCANNING
    assert session.advisory is FailureReason.LOCATION_PERMISSION_DENIED
    assert session.advisory_code == PERMISSION_DENIED

    await session.receive_token(token_for(event))
    for code in (POSITION_UNAVAILABLE, TIMEOUT):
        session.on_position_error(code)
        assert session.state is SessionState.READY
        assert session.advisory is FailureReason.LOCATION_UNAVAILABLE
        assert session.advisory_code == code


async def test_watch_feeds_readings_and_is_released_on_success(backend, add_event):
    event = await add_event()
    positions = Positions()
    async with CheckInSession(backend) as session:
        task = session.watch(positions)
        await session.receive_token(token_for(event))
        await positions.queue.put(PositionError(TIMEOUT))
        await positions.queue.put(HERE)
        for _ in range(10):
            await asyncio.sleep(0)
        assert session.can_commit
        await session.commit()
        await asyncio.sleep(0)
        assert task.cancelled() or task.done()
    assert positions.closed


async def test_failure_releases_watch(backend):
    positions = Positions()
    session = CheckInSession(backend)
    task = session.watch(positions)
    await asyncio.sleep(0)
    await session.receive_token("CHECKIN-onlytwoparts")
    await asyncio.sleep(0)
    assert task.done()
    assert positions.closed


async def test_reset_discards_everything(backend, add_event):
    event = await add_event(tracking_mode=TrackingMode.FULL_TRACKING)
    session = CheckInSession(backend)
    task = session.watch(Positions())
    await session.receive_token(token_for(event))
    session.submit_registration("Ann", "ann@example.org")
    session.on_position(HERE)
    session.reset()
    await asyncio.sleep(0)
    assert task.done()
    assert session.state is SessionState.SCANNING
    assert session.context is None
    assert session.registration is None
    assert session.last_position is None
    assert session.distance is None
    # registration is asked for again on the next attempt
    assert await session.receive_token(token_for(event)) is SessionState.REGISTERING


async def test_token_only_accepted_while_scanning(backend, add_event):
    event = await add_event()
    session = CheckInSession(backend)
    await session.receive_token(token_for(event))
    with pytest.raises(InvalidTransition):
        await session.receive_token(token_for(event))


async def test_anonymous_sessions_do_not_collide(backend, database, add_event):
    event = await add_event()
    states = []
    for _ in range(2):
        session = CheckInSession(backend)
        await session.receive_token(token_for(event))
        session.on_position(HERE)
        states.append(await session.commit())
    assert states == [SessionState.SUCCESS, SessionState.SUCCESS]
    async with database() as db:
        assert await count_for_day(db, event.id, NOW.date()) == 2


async def test_anonymous_identity_survives_reset(backend, add_event):
    event = await add_event()
    session = CheckInSession(backend)
    device = session.device_id
    await session.receive_token(token_for(event))
    session.on_position(HERE)
    assert await session.commit() is SessionState.SUCCESS
    session.reset()
    assert session.device_id == device
    await session.receive_token(token_for(event))
    session.on_position(HERE)
    assert await session.commit() is SessionState.FAILED
    assert session.failure is FailureReason.ALREADY_CHECKED_IN


@pytest.mark.parametrize("reading", [
    PositionReading(float("nan"), NEARBY[1]),
    PositionReading(NEARBY[0], float("inf")),
    PositionReading(91.0, NEARBY[1]),
])
async def test_unusable_fix_is_dropped(backend, add_event, reading):
    event = await add_event()
    session = CheckInSession(backend)
    await session.receive_token(token_for(event))
    session.on_position(HERE)
    session.on_position(reading)
    assert session.state is SessionState.READY
    assert session.advisory is FailureReason.LOCATION_UNAVAILABLE
    assert session.last_position == HERE
    assert session.can_commit
    assert await session.commit() is SessionState.SUCCESS
