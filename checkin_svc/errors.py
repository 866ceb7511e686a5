from __future__ import annotations
from enum import Enum


class FailureReason(str, Enum):
    INVALID_TOKEN = "InvalidToken"
    TOKEN_EXPIRED = "TokenExpired"
    EVENT_NOT_FOUND = "EventNotFound"
    OUTSIDE_TIME_WINDOW = "OutsideTimeWindow"
    OUTSIDE_RADIUS = "OutsideRadius"
    ALREADY_CHECKED_IN = "AlreadyCheckedIn"
    LOCATION_UNAVAILABLE = "LocationUnavailable"
    LOCATION_PERMISSION_DENIED = "LocationPermissionDenied"


class CheckInError(Exception):
    """Base class for every rejection a check-in attempt can end with."""

    reason: FailureReason
    status_code: int = 400

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.reason.value
        super().__init__(self.detail)


class InvalidToken(CheckInError):
    reason = FailureReason.INVALID_TOKEN


class TokenExpired(CheckInError):
    reason = FailureReason.TOKEN_EXPIRED


class EventNotFound(CheckInError):
    reason = FailureReason.EVENT_NOT_FOUND
    status_code = 404


class OutsideTimeWindow(CheckInError):
    reason = FailureReason.OUTSIDE_TIME_WINDOW
    status_code = 403


class OutsideRadius(CheckInError):
    reason = FailureReason.OUTSIDE_RADIUS
    status_code = 403


class AlreadyCheckedIn(CheckInError):
    reason = FailureReason.ALREADY_CHECKED_IN
    status_code = 409


class LocationUnavailable(CheckInError):
    reason = FailureReason.LOCATION_UNAVAILABLE
    status_code = 422


class LocationPermissionDenied(CheckInError):
    reason = FailureReason.LOCATION_PERMISSION_DENIED
    status_code = 422


ERRORS_BY_REASON: dict[FailureReason, type[CheckInError]] = {
    cls.reason: cls
    for cls in (
        InvalidToken,
        TokenExpired,
        EventNotFound,
        OutsideTimeWindow,
        OutsideRadius,
        AlreadyCheckedIn,
        LocationUnavailable,
        LocationPermissionDenied,
    )
}


class StorageError(Exception):
    """The commit could not be written; the attempt may be retried."""
