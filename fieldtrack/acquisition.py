import asyncio
import time
from typing import Callable, Optional

from fieldtrack.errors import LocationUnavailable, PermissionDenied, ServicesDisabled
from fieldtrack.models import AccuracyTier, Position

ProgressReporter = Callable[[str], object]


class LocationAcquisitionEngine:
    """Best-effort single fix: last known position first, then an accuracy ladder.

    ``device`` is any object exposing the device location API:

    - ``await services_enabled() -> bool``
    - ``await permission_granted() -> bool``
    - ``await last_known(max_age_sec) -> Position | None``
    - ``await current_position(tier) -> Position`` (may never return; the
      engine bounds it with ``tier.timeout_sec``)

    Tiers are tried in order and each one gets its own timeout; there is no
    overall deadline across tiers.
    """

    def __init__(
        self,
        device,
        logger,
        *,
        tiers: list[AccuracyTier],
        max_last_known_age_sec: float = 600,
    ) -> None:
        if not tiers:
            raise ValueError("at least one accuracy tier is required")
        self.device = device
        self.logger = logger
        self.tiers = list(tiers)
        self.max_last_known_age_sec = max_last_known_age_sec

    def _report(self, progress: Optional[ProgressReporter], message: str) -> None:
        if progress is None:
            return
        try:
            progress(message)
        except Exception as exc:
            self.logger.warning("ACQUIRE_PROGRESS_FAILED message=%s error=%s", message, exc)

    async def acquire(self, progress: Optional[ProgressReporter] = None) -> Position:
        if not await self.device.permission_granted():
            self.logger.info("ACQUIRE_FAILED reason=permission_denied")
            raise PermissionDenied("Location permission is not granted.")
        if not await self.device.services_enabled():
            self.logger.info("ACQUIRE_FAILED reason=services_disabled")
            raise ServicesDisabled("Location services are disabled.")

        self._report(progress, "Checking last known location...")
        cached = await self.device.last_known(self.max_last_known_age_sec)
        if cached is not None and cached.age_sec() <= self.max_last_known_age_sec:
            self.logger.info(
                "ACQUIRE_OK source=last_known age=%.1f acc=%s",
                cached.age_sec(),
                cached.accuracy_m,
            )
            self._report(progress, "Using your recent location.")
            return cached

        for index, tier in enumerate(self.tiers, 1):
            self._report(progress, f"Getting GPS fix ({tier.name} accuracy, attempt {index}/{len(self.tiers)})...")
            position = await self._try_tier(tier)
            if position is not None:
                self._report(progress, "Location found.")
                return position

        self.logger.warning("ACQUIRE_FAILED reason=all_tiers_timed_out tiers=%s", [t.name for t in self.tiers])
        raise LocationUnavailable("Could not get your location in time.")

    async def _try_tier(self, tier: AccuracyTier) -> Optional[Position]:
        started = time.monotonic()
        try:
            position = await asyncio.wait_for(self.device.current_position(tier), timeout=tier.timeout_sec)
        except asyncio.TimeoutError:
            self.logger.info("ACQUIRE_TIER_TIMEOUT tier=%s timeout=%.1f", tier.name, tier.timeout_sec)
            return None

        if position is None:
            self.logger.info("ACQUIRE_TIER_EMPTY tier=%s", tier.name)
            return None

        self.logger.info(
            "ACQUIRE_OK source=fresh tier=%s elapsed=%.2f acc=%s",
            tier.name,
            time.monotonic() - started,
            position.accuracy_m,
        )
        return position
