from __future__ import annotations
import json
import logging
from typing import Awaitable, Callable, Sequence
from nats.aio.client import Client as NATS
from .config import get_settings

logger = logging.getLogger(__name__)
_settings = get_settings()
_nats = NATS()

async def nats_connect():
    if not _settings.nats_enabled:
        return
    if not _nats.is_connected:
        servers: Sequence[str] = [u.strip() for u in _settings.nats_urls.split(",") if u.strip()]
        await _nats.connect(servers=servers)

async def nats_close():
    try:
        if _nats.is_connected:
            await _nats.drain()
    except Exception:
        logger.warning("NATS drain failed", exc_info=True)

def event_subject(event_id) -> str:
    return f"{_settings.nats_subject_checkin}.{event_id}"

async def publish_checkin(evt: dict):
    """
    evt = {
      "event_id": str,
      "record_id": str,
      "participant_key": str,
      "session_date": "YYYY-MM-DD",
      "checked_at": iso8601,
    }
    Published on the base subject and on a per-event subject for live monitors.
    """
    if not _settings.nats_enabled:
        return
    await nats_connect()
    data = json.dumps(evt).encode("utf-8")
    await _nats.publish(_settings.nats_subject_checkin, data)
    await _nats.publish(event_subject(evt["event_id"]), data)

async def subscribe_event_checkins(event_id, cb: Callable[[dict], Awaitable[None]]):
    """Subscribe to check-ins of one event; returns the subscription (call .unsubscribe())."""
    await nats_connect()
    async def handler(msg):
        try:
            data = json.loads(msg.data)
        except ValueError:
            logger.warning("dropping malformed check-in message on %s", msg.subject)
            return
        await cb(data)
    return await _nats.subscribe(event_subject(event_id), cb=handler)
