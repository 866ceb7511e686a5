from __future__ import annotations
import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Protocol, Union

from pydantic import ValidationError

from ..core.geo import InvalidCoordinates, check_coordinates, distance_meters, is_within_radius
from ..errors import CheckInError, FailureReason, LocationUnavailable, StorageError
from ..schemas import AttendanceRead, EventContext, GuestRegistration, Participant, PositionIn

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    SCANNING = "scanning"
    CHECKING = "checking"
    REGISTERING = "registering"
    READY = "ready"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL = (SessionState.SUCCESS, SessionState.FAILED)

# codes reported by the position provider, kept verbatim for the UI
PERMISSION_DENIED = "PERMISSION_DENIED"
POSITION_UNAVAILABLE = "POSITION_UNAVAILABLE"
TIMEOUT = "TIMEOUT"


class InvalidTransition(RuntimeError):
    pass


@dataclass(frozen=True)
class PositionReading:
    latitude: float
    longitude: float
    accuracy: float | None = None

    @property
    def point(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)


class PositionError(Exception):
    def __init__(self, code: str, message: str | None = None):
        self.code = code
        super().__init__(message or code)


PositionSource = AsyncIterator[Union[PositionReading, PositionError]]


class CheckInBackend(Protocol):
    async def validate(self, raw: str) -> EventContext: ...

    async def commit(
        self, context: EventContext, participant: Participant, position: PositionIn
    ) -> AttendanceRead: ...


class CheckInSession:
    """
    One participant's pass through scanning -> checking -> (registering) ->
    ready -> success | failed.

    Methods that move the session return the new state; a rejected attempt
    is a transition to FAILED, not an exception. ``commit`` raises only when
    the state does not change: no usable position fix yet
    (LocationUnavailable) or a storage failure (StorageError), both of which
    may be retried.
    """

    def __init__(self, backend: CheckInBackend, *, participant: Participant | None = None, device_id: str | None = None):
        self.backend = backend
        self.participant = participant
        # anonymous sessions still need a stable identity across retries
        self.device_id = device_id or uuid.uuid4().hex
        self.state = SessionState.SCANNING
        self.failure: FailureReason | None = None
        self.failure_detail: str | None = None
        self.context: EventContext | None = None
        self.registration: GuestRegistration | None = None
        self.validation_message: str | None = None
        self.record: AttendanceRead | None = None
        self.last_position: PositionReading | None = None
        self.advisory: FailureReason | None = None
        self.advisory_code: str | None = None
        self._fresh_position: PositionReading | None = None
        self._watch_task: asyncio.Task | None = None
        self._commit_lock = asyncio.Lock()
        self._epoch = 0

    async def __aenter__(self) -> "CheckInSession":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # --- token

    async def receive_token(self, raw: str) -> SessionState:
        """Accept a scanned code or deep link and validate it."""
        if self.state is not SessionState.SCANNING:
            raise InvalidTransition(f"cannot accept a token while {self.state.value}")
        self.state = SessionState.CHECKING
        epoch = self._epoch
        try:
            context = await self.backend.validate(raw)
        except CheckInError as exc:
            if epoch == self._epoch:
                self._fail(exc.reason, exc.detail)
            return self.state
        except Exception:
            if epoch == self._epoch:
                self.state = SessionState.SCANNING
            raise
        if epoch != self._epoch:
            # reset while validating; this result belongs to a discarded attempt
            return self.state

        self.context = context
        if context.requires_registration and self.participant is None:
            self.state = SessionState.REGISTERING
        else:
            self._enter_ready()
        return self.state

    # --- registration

    def submit_registration(self, name: str, email: str) -> bool:
        if self.state is not SessionState.REGISTERING:
            raise InvalidTransition(f"not collecting registration while {self.state.value}")
        try:
            self.registration = GuestRegistration(name=name, email=email)
        except ValidationError as exc:
            self.validation_message = "; ".join(str(e["ctx"]["error"]) if "ctx" in e else e["msg"] for e in exc.errors())
            return False
        self.validation_message = None
        self._enter_ready()
        return True

    # --- position

    def on_position(self, reading: PositionReading) -> None:
        try:
            check_coordinates(reading.latitude, reading.longitude)
        except InvalidCoordinates as exc:
            logger.info("dropping unusable position fix: %s", exc)
            self.advisory = FailureReason.LOCATION_UNAVAILABLE
            self.advisory_code = POSITION_UNAVAILABLE
            return
        self.last_position = reading
        if self.state is SessionState.READY:
            self._fresh_position = reading
        self.advisory = None
        self.advisory_code = None

    def on_position_error(self, code: str) -> None:
        self.advisory_code = code
        if code == PERMISSION_DENIED:
            self.advisory = FailureReason.LOCATION_PERMISSION_DENIED
        else:
            self.advisory = FailureReason.LOCATION_UNAVAILABLE
        logger.info("position error %s while %s", code, self.state.value)

    def watch(self, source: PositionSource) -> asyncio.Task:
        """Consume a position source for as long as this attempt lives."""
        self._release_watch()
        self._watch_task = asyncio.ensure_future(self._pump(source))
        return self._watch_task

    async def _pump(self, source: PositionSource) -> None:
        try:
            async for item in source:
                if isinstance(item, PositionError):
                    self.on_position_error(item.code)
                else:
                    self.on_position(item)
        except PositionError as exc:
            self.on_position_error(exc.code)

    @property
    def distance(self) -> float | None:
        if self.context is None or self._fresh_position is None:
            return None
        return distance_meters(self.context.anchor, self._fresh_position.point)

    @property
    def within_radius(self) -> bool:
        d = self.distance
        return d is not None and is_within_radius(d, self.context.radius_meters)

    @property
    def can_commit(self) -> bool:
        return self.state is SessionState.READY and self.within_radius and not self._commit_lock.locked()

    # --- commit

    async def commit(self) -> SessionState:
        if self._commit_lock.locked():
            raise InvalidTransition("a commit is already in flight")
        async with self._commit_lock:
            if self.state is not SessionState.READY:
                raise InvalidTransition(f"cannot commit while {self.state.value}")
            reading = self._fresh_position
            if reading is None:
                self.advisory = self.advisory or FailureReason.LOCATION_UNAVAILABLE
                raise LocationUnavailable("no position fix since the token was accepted")
            if not self.within_radius:
                self._fail(
                    FailureReason.OUTSIDE_RADIUS,
                    f"{round(self.distance)} m from the venue, must be within {self.context.radius_meters:g} m",
                )
                return self.state

            epoch = self._epoch
            position = PositionIn(latitude=reading.latitude, longitude=reading.longitude, accuracy=reading.accuracy)
            try:
                record = await self.backend.commit(self.context, self._resolve_participant(), position)
            except CheckInError as exc:
                if epoch == self._epoch:
                    self._fail(exc.reason, exc.detail)
                return self.state
            except StorageError:
                logger.warning("commit for event %s failed, session stays ready", self.context.event_id)
                raise
            if epoch != self._epoch:
                return self.state
            self.record = record
            self.state = SessionState.SUCCESS
            self._release_watch()
            return self.state

    def _resolve_participant(self) -> Participant:
        if self.participant is not None:
            return self.participant
        if self.registration is not None:
            return Participant.guest(self.registration.name, self.registration.email, self.device_id)
        return Participant.guest(device_id=self.device_id)

    # --- lifecycle

    def reset(self) -> None:
        """Start over from scanning; registration data and readings are discarded."""
        self._epoch += 1
        self._release_watch()
        self.state = SessionState.SCANNING
        self.failure = None
        self.failure_detail = None
        self.context = None
        self.registration = None
        self.validation_message = None
        self.record = None
        self.last_position = None
        self._fresh_position = None
        self.advisory = None
        self.advisory_code = None

    async def close(self) -> None:
        task, self._watch_task = self._watch_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _enter_ready(self) -> None:
        self.state = SessionState.READY
        self._fresh_position = None

    def _fail(self, reason: FailureReason, detail: str | None = None) -> None:
        logger.info("check-in failed: %s (%s)", reason.value, detail)
        self.state = SessionState.FAILED
        self.failure = reason
        self.failure_detail = detail
        self._release_watch()

    def _release_watch(self) -> None:
        task, self._watch_task = self._watch_task, None
        if task is not None and not task.done():
            task.cancel()
