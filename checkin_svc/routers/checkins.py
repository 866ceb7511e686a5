from __future__ import annotations
import logging
import uuid
from datetime import datetime, timezone
from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
import jwt

from ..deps import get_db, get_optional_claims, rate_limited
from ..db import get_event
from ..core.config import get_settings
from ..core.ticket import sign_ticket, verify_ticket
from ..errors import EventNotFound, InvalidToken
from ..schemas import (
    AttendanceRead, CommitRequest, GuestRegistration, Participant, ValidateRequest, ValidateResponse,
)
from ..services.checkins import record_attendance, reporting_tz
from ..services.validation import validate_token

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter(prefix="/checkin", tags=["checkin"], dependencies=[Depends(rate_limited)])

def _now():
    return datetime.now(timezone.utc)

async def _validate(raw: str, db: AsyncSession) -> ValidateResponse:
    ctx = await validate_token(
        raw,
        now=_now(),
        lookup=lambda event_id: get_event(db, event_id),
        tz=reporting_tz(),
        ttl_ms=settings.token_ttl_ms,
    )
    ticket, exp = sign_ticket(event_id=ctx.event_id, token=ctx.token, token_issued_at=ctx.token_issued_at)
    ctx.ticket = ticket
    return ValidateResponse(context=ctx, ticket=ticket, ticket_expires_at=exp)

# --- 1) Attendee scans the host's code: verify it and receive a commit ticket
@router.post("/validate", response_model=ValidateResponse)
async def validate(payload: ValidateRequest, db: AsyncSession = Depends(get_db)):
    return await _validate(payload.token, db)

# deep-link entry: the same token carried as a query parameter
@router.get("/scan", response_model=ValidateResponse)
async def scan(token: str, db: AsyncSession = Depends(get_db)):
    return await _validate(token, db)

# --- 2) Attendee is within range: commit attendance (server is the only writer)
@router.post("/commit", response_model=AttendanceRead, status_code=201)
async def commit(
    payload: CommitRequest,
    claims: dict | None = Depends(get_optional_claims),
    db: AsyncSession = Depends(get_db),
):
    try:
        ticket = verify_ticket(payload.ticket)
    except jwt.PyJWTError:
        raise InvalidToken("invalid or expired check-in ticket")

    event = await get_event(db, ticket["event_id"])
    if event is None or not event.is_active:
        raise EventNotFound(f"no active event {ticket['event_id']}")

    if claims is not None:
        participant = Participant.user(uuid.UUID(claims["sub"]))
    else:
        guest = payload.guest
        if event.requires_registration:
            try:
                reg = GuestRegistration(name=guest.name if guest else "", email=guest.email if guest else "")
            except ValidationError as exc:
                raise HTTPException(status_code=422, detail=[e["msg"] for e in exc.errors()])
            participant = Participant.guest(reg.name, reg.email, guest.device_id)
        else:
            participant = Participant.guest(
                guest.name if guest else None, guest.email if guest else None, guest.device_id if guest else None,
            )

    record = await record_attendance(
        db,
        event=event,
        participant=participant,
        position=payload.position,
        token=ticket["token"],
        token_issued_at=int(ticket["token_issued_at"]),
        now=_now(),
    )
    return AttendanceRead.model_validate(record)
