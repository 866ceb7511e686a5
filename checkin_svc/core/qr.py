from __future__ import annotations
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from io import BytesIO
from urllib.parse import parse_qs, quote, urlsplit

from ..errors import InvalidToken

TOKEN_PREFIX = "CHECKIN"
SCAN_PATH = "/checkin/scan"

# event ids are UUIDs, whose canonical text carries hyphens of its own
_UUID_HEAD = re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}(?=-)")


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def epoch_millis(instant: datetime) -> int:
    # integer arithmetic; float timestamps can land a millisecond short
    return (instant - EPOCH) // timedelta(milliseconds=1)


def now_ms() -> int:
    return epoch_millis(datetime.now(timezone.utc))


@dataclass(frozen=True)
class IssuedToken:
    token: str
    issued_at: int  # epoch millis
    url: str


@dataclass(frozen=True)
class ParsedToken:
    event_id: str
    secret: str
    issued_at: int


def issue_token(event_id, secret: str, now: int | None = None) -> IssuedToken:
    issued_at = now_ms() if now is None else int(now)
    token = f"{TOKEN_PREFIX}-{event_id}-{secret}-{issued_at}"
    return IssuedToken(token=token, issued_at=issued_at, url=f"{SCAN_PATH}?token={quote(token, safe='')}")


def parse_token(raw: str) -> ParsedToken:
    """
    Split CHECKIN-<eventId>-<secret>-<issuedAt> into its fields.

    The timestamp is whatever follows the last hyphen and the event id is the
    first field after the prefix, so the secret may itself contain hyphens.
    """
    if not isinstance(raw, str):
        raise InvalidToken("token must be a string")
    prefix, sep, rest = raw.strip().partition("-")
    if prefix != TOKEN_PREFIX or not sep:
        raise InvalidToken("not a check-in token")

    body, sep, stamp = rest.rpartition("-")
    if not sep or not (stamp.isascii() and stamp.isdigit()):
        raise InvalidToken("malformed issuance timestamp")

    m = _UUID_HEAD.match(body)
    if m:
        event_id, secret = m.group(0), body[m.end() + 1:]
    else:
        event_id, _, secret = body.partition("-")
    if not event_id or not secret:
        raise InvalidToken("missing event id or secret")
    return ParsedToken(event_id=event_id, secret=secret, issued_at=int(stamp))


def extract_token(value: str) -> str:
    """Accept either a raw token or a deep link carrying it as ?token= (or ?code=)."""
    value = (value or "").strip()
    if value.startswith(TOKEN_PREFIX + "-"):
        return value
    query = parse_qs(urlsplit(value).query)
    for key in ("token", "code"):
        if query.get(key):
            return query[key][0].strip()
    return value


def render_png(data: str) -> bytes:
    import qrcode
    img = qrcode.make(data)
    b = BytesIO()
    img.save(b, format="PNG")
    return b.getvalue()
