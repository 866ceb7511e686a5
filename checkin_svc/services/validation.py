from __future__ import annotations
import hmac
import logging
from datetime import date, datetime, tzinfo
from typing import Awaitable, Callable

from ..core.qr import epoch_millis, extract_token, parse_token
from ..errors import EventNotFound, InvalidToken, OutsideTimeWindow, TokenExpired
from ..models import Event
from ..schemas import EventContext

logger = logging.getLogger(__name__)

DEFAULT_TTL_MS = 10_000

EventLookup = Callable[[str], Awaitable["Event | None"]]


def scheduled_on(event: Event, day: date) -> bool:
    """Whether the event runs at all on the given calendar day."""
    if event.event_date is not None:
        return event.event_date == day
    if event.recurring_days:
        if event.end_repeat_date is not None and day > event.end_repeat_date:
            return False
        return day.weekday() in event.recurring_days
    return True


def within_daily_window(event: Event, local_now: datetime) -> bool:
    # compared at whole-second resolution, both ends inclusive
    tod = local_now.time().replace(microsecond=0, tzinfo=None)
    return event.start_time <= tod <= event.end_time


def build_context(event: Event, token: str, issued_at: int) -> EventContext:
    return EventContext(
        event_id=event.id,
        name=event.name,
        latitude=event.latitude,
        longitude=event.longitude,
        radius_meters=event.radius_meters,
        start_time=event.start_time,
        end_time=event.end_time,
        tracking_mode=event.tracking_mode,
        token=token,
        token_issued_at=issued_at,
    )


async def validate_token(
    raw: str,
    *,
    now: datetime,
    lookup: EventLookup,
    tz: tzinfo,
    ttl_ms: int = DEFAULT_TTL_MS,
) -> EventContext:
    """
    Authenticate a scanned token against the event it names.

    Raises InvalidToken, TokenExpired, EventNotFound or OutsideTimeWindow.
    Only staleness is checked: a timestamp ahead of ``now`` is accepted.
    """
    token = extract_token(raw)
    parsed = parse_token(token)

    age_ms = epoch_millis(now) - parsed.issued_at
    if age_ms > ttl_ms:
        raise TokenExpired(f"token is {age_ms} ms old")

    event = await lookup(parsed.event_id)
    if event is None or not event.is_active:
        raise EventNotFound(f"no active event {parsed.event_id}")

    if not hmac.compare_digest(parsed.secret.encode("utf-8"), event.qr_secret.encode("utf-8")):
        raise InvalidToken("token secret does not match the event")

    local_now = now.astimezone(tz)
    if not scheduled_on(event, local_now.date()) or not within_daily_window(event, local_now):
        raise OutsideTimeWindow(
            f"check-in is open {event.start_time.isoformat()}-{event.end_time.isoformat()}"
        )

    logger.debug("token for event %s validated (age %d ms)", event.id, age_ms)
    return build_context(event, token, parsed.issued_at)
