from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Tuple
import secrets
import uuid
import jwt

from .config import get_settings
settings = get_settings()

TICKET_AUD = "attendance-commit"
TICKET_ISS = "geo-checkin-svc"

def _now():
    return datetime.now(timezone.utc)

def sign_ticket(*, event_id: uuid.UUID, token: str, token_issued_at: int, ttl_seconds: int | None = None) -> Tuple[str, int]:
    """
    A validated token is exchanged for a ticket so the commit step can
    happen after registration and positioning without re-presenting it.
    """
    exp = _now() + timedelta(seconds=ttl_seconds or settings.ticket_ttl_seconds)
    payload: Dict[str, Any] = {
        "aud": TICKET_AUD,
        "iss": TICKET_ISS,
        "jti": secrets.token_urlsafe(16),
        "iat": int(_now().timestamp()),
        "exp": int(exp.timestamp()),
        "scope": "commit",
        "event_id": str(event_id),
        "token": token,
        "token_issued_at": int(token_issued_at),
    }
    ticket = jwt.encode(payload, settings.ticket_secret_effective, algorithm="HS256")
    return ticket, int(exp.timestamp())

def verify_ticket(ticket: str) -> Dict[str, Any]:
    payload = jwt.decode(
        ticket,
        settings.ticket_secret_effective,
        algorithms=["HS256"],
        audience=TICKET_AUD,
        issuer=TICKET_ISS,
        options={"require": ["exp", "aud", "iss"]},
    )
    if payload.get("scope") != "commit":
        raise jwt.InvalidTokenError("invalid scope")
    for k in ("event_id", "token", "token_issued_at"):
        if k not in payload:
            raise jwt.InvalidTokenError("missing claim: " + k)
    return payload
