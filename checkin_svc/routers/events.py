from __future__ import annotations
import logging
import uuid
from datetime import date, datetime, timezone
from fastapi import APIRouter, Depends, HTTPException, Response, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_claims, get_db, require_organiser
from ..db import async_session_maker, get_event
from ..core.config import get_settings
from ..core.nats import subscribe_event_checkins
from ..core.qr import IssuedToken, issue_token, render_png
from ..models import Event, new_secret
from ..schemas import AttendanceRead, CountRead, EventCreate, EventRead, TokenResponse
from ..services.checkins import list_attendance, session_date_for
from ..services.guard import count_for_day
from ..services.live import AttendanceCountMonitor, TokenDisplayLoop

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter(prefix="/events", tags=["events"])

def _today() -> date:
    return session_date_for(datetime.now(timezone.utc))

def _token_response(t: IssuedToken) -> TokenResponse:
    return TokenResponse(token=t.token, issued_at=t.issued_at, expires_at=t.issued_at + settings.token_ttl_ms, url=t.url)

async def _own_event(db: AsyncSession, event_id: uuid.UUID, claims: dict) -> Event:
    event = await get_event(db, event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Event not found")
    if str(event.host_id) != str(claims["sub"]):
        raise HTTPException(status_code=403, detail="Not the host of this event")
    return event

@router.post("", response_model=EventRead, status_code=201)
async def create_event(payload: EventCreate, claims: dict = Depends(require_organiser), db: AsyncSession = Depends(get_db)):
    event = Event(host_id=uuid.UUID(claims["sub"]), **payload.model_dump())
    db.add(event)
    await db.commit()
    await db.refresh(event)
    logger.info("event %s created by %s", event.id, claims["sub"])
    return EventRead.model_validate(event)

@router.get("/{event_id}", response_model=EventRead)
async def read_event(event_id: uuid.UUID, claims: dict = Depends(require_organiser), db: AsyncSession = Depends(get_db)):
    return EventRead.model_validate(await _own_event(db, event_id, claims))

@router.post("/{event_id}/rotate-secret", status_code=204)
async def rotate_secret(event_id: uuid.UUID, claims: dict = Depends(require_organiser), db: AsyncSession = Depends(get_db)):
    # tokens carrying the old secret stop validating immediately
    event = await _own_event(db, event_id, claims)
    event.qr_secret = new_secret()
    await db.commit()
    return Response(status_code=204)

@router.post("/{event_id}/deactivate", response_model=EventRead)
async def deactivate(event_id: uuid.UUID, claims: dict = Depends(require_organiser), db: AsyncSession = Depends(get_db)):
    event = await _own_event(db, event_id, claims)
    event.is_active = False
    await db.commit()
    await db.refresh(event)
    return EventRead.model_validate(event)

# --- host display: current token, as JSON or as a QR image
@router.post("/{event_id}/token", response_model=TokenResponse, status_code=201)
async def create_token(event_id: uuid.UUID, claims: dict = Depends(require_organiser), db: AsyncSession = Depends(get_db)):
    event = await _own_event(db, event_id, claims)
    return _token_response(issue_token(event.id, event.qr_secret))

@router.get("/{event_id}/token.png")
async def token_png(event_id: uuid.UUID, claims: dict = Depends(require_organiser), db: AsyncSession = Depends(get_db)):
    event = await _own_event(db, event_id, claims)
    issued = issue_token(event.id, event.qr_secret)
    return Response(content=render_png(issued.token), media_type="image/png", headers={"Cache-Control": "no-store"})

# --- organiser reads
@router.get("/{event_id}/count", response_model=CountRead)
async def attendance_count(
    event_id: uuid.UUID, day: date | None = None, claims: dict = Depends(require_organiser), db: AsyncSession = Depends(get_db)
):
    event = await _own_event(db, event_id, claims)
    day = day or _today()
    return CountRead(event_id=event.id, session_date=day, count=await count_for_day(db, event.id, day))

@router.get("/{event_id}/attendance", response_model=list[AttendanceRead])
async def roster(
    event_id: uuid.UUID, day: date | None = None, claims: dict = Depends(require_organiser), db: AsyncSession = Depends(get_db)
):
    event = await _own_event(db, event_id, claims)
    return [AttendanceRead.model_validate(r) for r in await list_attendance(db, event.id, day)]

# --- live host feed: rotating token frames plus the running count
@router.websocket("/{event_id}/live")
async def live_feed(websocket: WebSocket, event_id: uuid.UUID):
    try:
        claims = await get_claims(websocket.headers.get("authorization"))
        if claims.get("role") != "organiser":
            raise HTTPException(status_code=403, detail="Organiser role required")
        async with async_session_maker() as db:
            await _own_event(db, event_id, claims)
    except HTTPException as exc:
        logger.info("live feed for %s refused: %s", event_id, exc.detail)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.accept()

    async def fetch_secret() -> str | None:
        async with async_session_maker() as db:
            event = await get_event(db, event_id)
            return event.qr_secret if event is not None and event.is_active else None

    async def send_token(t: IssuedToken) -> None:
        await websocket.send_json({"type": "token", **_token_response(t).model_dump()})

    async def count() -> int:
        async with async_session_maker() as db:
            return await count_for_day(db, event_id, _today())

    async def send_count(n: int) -> None:
        await websocket.send_json({"type": "count", "count": n})

    subscribe = None
    if settings.nats_enabled:
        async def subscribe(cb):
            return await subscribe_event_checkins(event_id, cb)

    tokens = TokenDisplayLoop(event_id, fetch_secret, send_token, settings.token_refresh_ms / 1000)
    counts = AttendanceCountMonitor(event_id, count, send_count, settings.count_refresh_seconds, subscribe)
    async with tokens, counts:
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug("live feed for %s closed", event_id)
