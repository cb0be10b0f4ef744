import asyncio
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from fieldtrack.models import AccuracyTier, Position


class FeedSubscription:
    def __init__(self, feed: "TelegramLocationFeed", callback: Callable[[Position], None]) -> None:
        self._feed = feed
        self.callback = callback

    @property
    def active(self) -> bool:
        return self in self._feed._watchers

    def remove(self) -> None:
        if self in self._feed._watchers:
            self._feed._watchers.remove(self)


class TelegramLocationFeed:
    """Device location API backed by the technician's Telegram location messages.

    Permission counts as granted once the technician has shared any location
    with the bot. Location services count as enabled while a live-location
    broadcast is running.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._last: Optional[Position] = None
        self._last_update_ts = 0.0
        self._live_until = 0.0
        self._shared_once = False
        self._waiters: list[tuple[AccuracyTier, asyncio.Future]] = []
        self._watchers: list[FeedSubscription] = []

    def push(
        self,
        lat: float,
        lng: float,
        accuracy_m: Optional[float] = None,
        *,
        live_until: Optional[float] = None,
        captured_at: Optional[datetime] = None,
    ) -> Position:
        position = Position(
            lat=float(lat),
            lng=float(lng),
            accuracy_m=float(accuracy_m) if accuracy_m is not None else None,
            captured_at=captured_at or datetime.now(timezone.utc),
        )
        self._shared_once = True
        self._last = position
        self._last_update_ts = self._clock()
        if live_until is not None:
            self._live_until = float(live_until)

        for tier, future in list(self._waiters):
            if not future.done() and tier.accepts(position.accuracy_m):
                future.set_result(position)

        for subscription in list(self._watchers):
            subscription.callback(position)
        return position

    def stop_live(self) -> None:
        self._live_until = 0.0

    def last_update_age_sec(self) -> Optional[float]:
        if self._last_update_ts <= 0:
            return None
        return self._clock() - self._last_update_ts

    @property
    def is_live(self) -> bool:
        return self._live_until > self._clock()

    async def services_enabled(self) -> bool:
        return self.is_live

    async def permission_granted(self) -> bool:
        return self._shared_once

    async def last_known(self, max_age_sec: float) -> Optional[Position]:
        if self._last is None or self._last.age_sec() > max_age_sec:
            return None
        return self._last

    async def current_position(self, tier: AccuracyTier) -> Position:
        future = asyncio.get_running_loop().create_future()
        entry = (tier, future)
        self._waiters.append(entry)
        try:
            return await future
        finally:
            self._waiters.remove(entry)

    def watch(self, callback: Callable[[Position], None]) -> FeedSubscription:
        subscription = FeedSubscription(self, callback)
        self._watchers.append(subscription)
        return subscription
