from __future__ import annotations
import asyncio
import logging
from typing import Any, Awaitable, Callable

from ..core.qr import IssuedToken, issue_token

logger = logging.getLogger(__name__)

Subscribe = Callable[[Callable[[dict], Awaitable[None]]], Awaitable[Any]]


class _Loop:
    """An owned periodic task: start() spawns it, stop() cancels and awaits it."""

    def __init__(self, interval: float):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        if not self.running:
            self._task = asyncio.ensure_future(self._run())
        return self

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def __aenter__(self):
        return await self.start()

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    async def _run(self) -> None:
        raise NotImplementedError


class TokenDisplayLoop(_Loop):
    """
    Host side: publish a freshly stamped token every ``interval`` seconds.

    The redisplay cadence only narrows the window for relaying a photographed
    code; expiry is decided by the validator from the embedded timestamp.
    The secret is re-read on every tick so a rotation shows up at once.
    """

    def __init__(
        self,
        event_id,
        fetch_secret: Callable[[], Awaitable[str | None]],
        publish: Callable[[IssuedToken], Awaitable[None]],
        interval: float,
    ):
        super().__init__(interval)
        self.event_id = event_id
        self.fetch_secret = fetch_secret
        self.publish = publish
        self.current: IssuedToken | None = None

    async def tick(self) -> IssuedToken | None:
        secret = await self.fetch_secret()
        if secret is None:
            return None
        self.current = issue_token(self.event_id, secret)
        await self.publish(self.current)
        return self.current

    async def _run(self) -> None:
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("token refresh failed for event %s", self.event_id)
            await asyncio.sleep(self.interval)


class AttendanceCountMonitor(_Loop):
    """
    Host side: publish the committed count on a period, and straight away
    whenever a push notification for the event arrives.
    """

    def __init__(
        self,
        event_id,
        count: Callable[[], Awaitable[int]],
        publish: Callable[[int], Awaitable[None]],
        interval: float,
        subscribe: Subscribe | None = None,
    ):
        super().__init__(interval)
        self.event_id = event_id
        self.count = count
        self.publish = publish
        self.subscribe = subscribe
        self.last: int | None = None
        self._wake = asyncio.Event()
        self._subscription: Any = None

    async def refresh(self) -> int:
        self.last = await self.count()
        await self.publish(self.last)
        return self.last

    async def _notified(self, _evt: dict) -> None:
        self._wake.set()

    async def start(self):
        if not self.running and self.subscribe is not None and self._subscription is None:
            try:
                self._subscription = await self.subscribe(self._notified)
            except Exception:
                logger.warning("push notifications unavailable for event %s, polling only", self.event_id, exc_info=True)
        return await super().start()

    async def stop(self) -> None:
        sub, self._subscription = self._subscription, None
        if sub is not None:
            try:
                await sub.unsubscribe()
            except Exception:
                logger.warning("unsubscribe failed for event %s", self.event_id, exc_info=True)
        await super().stop()

    async def _run(self) -> None:
        while True:
            self._wake.clear()
            try:
                await self.refresh()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("count refresh failed for event %s", self.event_id)
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
