from __future__ import annotations
import logging
from typing import Any, Dict
import httpx

from .errors import ERRORS_BY_REASON, FailureReason, StorageError
from .schemas import AttendanceRead, EventContext, Participant, PositionIn, ValidateResponse

logger = logging.getLogger(__name__)


class HttpCheckInBackend:
    """
    Participant-side backend that talks to the check-in service over HTTP.

    Plugs into CheckInSession the same way LocalBackend does; the server
    re-checks the geofence and owns the duplicate guard.
    """

    def __init__(self, base_url: str, *, access_token: str | None = None, client: httpx.AsyncClient | None = None, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self._client = client
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                r = await self._client.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    r = await client.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
        except httpx.HTTPError as exc:
            logger.warning("check-in service unreachable: %s", exc)
            raise StorageError(str(exc)) from exc
        return _unwrap(r)

    async def validate(self, raw: str) -> EventContext:
        body = ValidateResponse.model_validate(await self._post("/checkin/validate", {"token": raw}))
        body.context.ticket = body.ticket
        return body.context

    async def commit(self, context: EventContext, participant: Participant, position: PositionIn) -> AttendanceRead:
        payload: Dict[str, Any] = {"ticket": context.ticket, "position": position.model_dump()}
        if participant.is_guest:
            payload["guest"] = {"name": participant.name, "email": participant.email, "device_id": participant.device_id}
        return AttendanceRead.model_validate(await self._post("/checkin/commit", payload))


def _unwrap(r: httpx.Response) -> Dict[str, Any]:
    if r.is_success:
        return r.json()
    try:
        body = r.json()
    except ValueError:
        body = {}
    reason = body.get("reason") if isinstance(body, dict) else None
    try:
        error = ERRORS_BY_REASON[FailureReason(reason)]
    except ValueError:
        error = None
    if error is not None:
        raise error(body.get("detail"))
    if r.status_code >= 500:
        raise StorageError(f"check-in service returned {r.status_code}")
    r.raise_for_status()
    return body
