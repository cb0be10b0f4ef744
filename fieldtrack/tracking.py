import time
from typing import Callable, Optional

from fieldtrack.channel import EVENT_END_ROUTE, EVENT_START_ROUTE, EVENT_TOGGLE_TRACKING, EVENT_UPDATE_LOCATION
from fieldtrack.errors import FieldTrackError, JobMismatch, NotConnected, OperationInProgress, SessionBusy
from fieldtrack.geo import haversine_m
from fieldtrack.models import (
    MODE_ACQUIRING_FIX,
    MODE_OFF,
    MODE_STOPPING_REQUESTED,
    MODE_TRACKING,
    Position,
    TrackingStatus,
)


class Sampler:
    """Forwards device fixes while armed.

    A fix is forwarded only when at least ``interval_sec`` has passed AND at
    least ``min_distance_m`` has been covered since the last forwarded fix.
    ``disarm()`` revokes the device subscription; fixes delivered after that
    are ignored.
    """

    def __init__(
        self,
        *,
        job_id: Optional[str],
        anchor: Position,
        interval_sec: float,
        min_distance_m: float,
        forward: Callable[[Position, Optional[str]], None],
        clock: Callable[[], float],
    ) -> None:
        self.job_id = job_id
        self.interval_sec = interval_sec
        self.min_distance_m = min_distance_m
        self.armed = False
        self._forward = forward
        self._clock = clock
        self._last_sent = anchor
        self._last_sent_at = clock()
        self._subscription = None

    @classmethod
    def arm(cls, device, **kwargs) -> "Sampler":
        sampler = cls(**kwargs)
        sampler._subscription = device.watch(sampler.offer)
        sampler.armed = True
        return sampler

    def offer(self, position: Position) -> bool:
        if not self.armed:
            return False
        now = self._clock()
        if now - self._last_sent_at < self.interval_sec:
            return False
        moved = haversine_m(self._last_sent.lat, self._last_sent.lng, position.lat, position.lng)
        if moved < self.min_distance_m:
            return False
        self._last_sent = position
        self._last_sent_at = now
        self._forward(position, self.job_id)
        return True

    def disarm(self) -> None:
        self.armed = False
        if self._subscription is not None:
            self._subscription.remove()
            self._subscription = None


class TrackingSession:
    def __init__(
        self,
        engine,
        channel,
        device,
        logger,
        *,
        job_interval_sec: float = 5.0,
        job_min_distance_m: float = 10.0,
        standalone_interval_sec: float = 10.0,
        standalone_min_distance_m: float = 20.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self.channel = channel
        self.device = device
        self.logger = logger
        self.job_interval_sec = job_interval_sec
        self.job_min_distance_m = job_min_distance_m
        self.standalone_interval_sec = standalone_interval_sec
        self.standalone_min_distance_m = standalone_min_distance_m
        self._clock = clock

        self.mode = MODE_OFF
        self.job_id: Optional[str] = None
        self.standalone = False
        self.interval_sec: Optional[float] = None
        self.min_distance_m: Optional[float] = None
        self._sampler: Optional[Sampler] = None
        self._route_fix: Optional[Position] = None
        self._epoch = 0
        self._toggle_in_flight = False

        channel.add_teardown_listener(self.reset)

    @property
    def tech_id(self) -> Optional[str]:
        return self.channel.identity

    @property
    def sampler(self) -> Optional[Sampler]:
        return self._sampler

    def status(self) -> TrackingStatus:
        return TrackingStatus(
            mode=self.mode,
            job_id=self.job_id,
            is_connected=self.channel.is_connected,
            standalone=self.standalone,
        )

    async def start_for_job(self, job_id: str, progress=None) -> Position:
        job_id = str(job_id)
        if self.mode != MODE_OFF:
            raise SessionBusy(self._busy_text())
        self._require_channel()

        epoch = self._begin(MODE_ACQUIRING_FIX, job_id=job_id, standalone=False)
        self.logger.info("TRACKING_START job_id=%s tech_id=%s", job_id, self.tech_id)
        try:
            position = await self.engine.acquire(progress)
            self._ensure_current(epoch)
            await self.channel.emit(EVENT_START_ROUTE, self._location_payload(job_id, position))
            self._ensure_current(epoch)
        except Exception as exc:
            if self._epoch == epoch:
                self._set_off()
            self.logger.warning("TRACKING_START_FAILED job_id=%s error=%s", job_id, exc)
            raise

        self._arm(position, job_id, self.job_interval_sec, self.job_min_distance_m)
        self.mode = MODE_TRACKING
        self.logger.info(
            "TRACKING_ACTIVE job_id=%s lat=%s lng=%s interval=%s min_distance=%s",
            job_id,
            position.lat,
            position.lng,
            self.interval_sec,
            self.min_distance_m,
        )
        return position

    async def stop_for_job(self, job_id: str, progress=None) -> Optional[Position]:
        job_id = str(job_id)
        if self.mode == MODE_OFF:
            self.logger.info("TRACKING_STOP_NOOP job_id=%s reason=not_tracking", job_id)
            return None
        if self.mode != MODE_TRACKING:
            raise SessionBusy(self._busy_text())
        if self.job_id != job_id:
            bound = self.job_id or "location sharing"
            raise JobMismatch(f"Tracking is bound to {bound}, not to job {job_id}.")

        last_fix = self._route_fix
        epoch = self._begin(MODE_STOPPING_REQUESTED, job_id=None, standalone=False)
        self._disarm()
        self.logger.info("TRACKING_STOP job_id=%s tech_id=%s", job_id, self.tech_id)
        return await self._end_route(epoch, job_id, progress, last_fix)

    async def close_route(self, job_id: str, progress=None) -> Position:
        """Sends ``endRoute`` for a job whose route was started by an earlier session."""
        job_id = str(job_id)
        if self.mode != MODE_OFF:
            raise SessionBusy(self._busy_text())
        self._require_channel()

        epoch = self._begin(MODE_STOPPING_REQUESTED, job_id=None, standalone=False)
        self.logger.info("TRACKING_CLOSE_ROUTE job_id=%s tech_id=%s", job_id, self.tech_id)
        return await self._end_route(epoch, job_id, progress, None)

    async def toggle_standalone(self, enabled: bool, progress=None) -> Optional[Position]:
        if self._toggle_in_flight:
            raise OperationInProgress("Location sharing is already being switched.")
        self._toggle_in_flight = True
        try:
            if enabled:
                return await self._enable_standalone(progress)
            await self._disable_standalone()
            return None
        finally:
            self._toggle_in_flight = False

    async def send_current_location(self, progress=None) -> Position:
        self._require_channel()
        position = await self.engine.acquire(progress)
        job_id = self.job_id if self.mode == MODE_TRACKING and not self.standalone else None
        await self.channel.emit(EVENT_UPDATE_LOCATION, self._location_payload(job_id, position))
        self.logger.info("MANUAL_LOCATION_SENT job_id=%s lat=%s lng=%s", job_id, position.lat, position.lng)
        return position

    def reset(self, reason: str = "reset") -> None:
        """Synchronously drop any session; an in-flight acquisition result will be discarded."""
        self._epoch += 1
        if self.mode == MODE_OFF and self._sampler is None:
            return
        self.logger.info("TRACKING_RESET reason=%s mode=%s job_id=%s", reason, self.mode, self.job_id)
        self._disarm()
        self._set_off()

    async def _enable_standalone(self, progress) -> Optional[Position]:
        if self.mode != MODE_OFF:
            if self.standalone and self.mode == MODE_TRACKING:
                self.logger.info("STANDALONE_ENABLE_NOOP tech_id=%s", self.tech_id)
                return None
            raise SessionBusy(self._busy_text())
        self._require_channel()

        epoch = self._begin(MODE_ACQUIRING_FIX, job_id=None, standalone=True)
        self.logger.info("STANDALONE_START tech_id=%s", self.tech_id)
        try:
            position = await self.engine.acquire(progress)
            self._ensure_current(epoch)
            await self.channel.emit(
                EVENT_TOGGLE_TRACKING,
                {"techId": self.tech_id, "enabled": True, "lat": position.lat, "lng": position.lng},
            )
            self._ensure_current(epoch)
        except Exception as exc:
            if self._epoch == epoch:
                self._set_off()
            self.logger.warning("STANDALONE_START_FAILED error=%s", exc)
            raise

        self._arm(position, None, self.standalone_interval_sec, self.standalone_min_distance_m)
        self.mode = MODE_TRACKING
        return position

    async def _disable_standalone(self) -> None:
        if self.mode == MODE_OFF:
            self.logger.info("STANDALONE_DISABLE_NOOP tech_id=%s", self.tech_id)
            return
        if not self.standalone:
            raise SessionBusy(self._busy_text())

        epoch = self._begin(MODE_STOPPING_REQUESTED, job_id=None, standalone=True)
        self._disarm()
        try:
            await self.channel.flush()
            self._ensure_current(epoch)
            await self.channel.emit(EVENT_TOGGLE_TRACKING, {"techId": self.tech_id, "enabled": False})
        finally:
            if self._epoch == epoch:
                self._set_off()
        self.logger.info("STANDALONE_STOPPED tech_id=%s", self.tech_id)

    async def _end_route(self, epoch: int, job_id: str, progress, last_fix: Optional[Position]) -> Position:
        try:
            await self.channel.flush()
            try:
                position = await self.engine.acquire(progress)
            except FieldTrackError as exc:
                # the route is closed with the last fix the server already has
                if last_fix is None or self._epoch != epoch:
                    raise
                self.logger.warning("TRACKING_FINAL_FIX_FAILED job_id=%s error=%s -> last route fix", job_id, exc)
                await self.channel.emit(EVENT_END_ROUTE, self._location_payload(job_id, last_fix))
                raise
            self._ensure_current(epoch)
            await self.channel.emit(EVENT_END_ROUTE, self._location_payload(job_id, position))
        except Exception as exc:
            self.logger.warning("TRACKING_STOP_FAILED job_id=%s error=%s", job_id, exc)
            raise
        finally:
            if self._epoch == epoch:
                self._set_off()
        self.logger.info("TRACKING_STOPPED job_id=%s lat=%s lng=%s", job_id, position.lat, position.lng)
        return position

    def _begin(self, mode: str, *, job_id: Optional[str], standalone: bool) -> int:
        self._epoch += 1
        self.mode = mode
        self.job_id = job_id
        self.standalone = standalone
        return self._epoch

    def _ensure_current(self, epoch: int) -> None:
        if self._epoch != epoch:
            self.logger.info("TRACKING_RESULT_DISCARDED reason=session_reset")
            raise NotConnected("Tracking was cancelled because the channel disconnected.")

    def _require_channel(self) -> None:
        if not self.channel.is_connected or not self.tech_id:
            raise NotConnected("Not connected to the dispatch server.")

    def _arm(self, anchor: Position, job_id: Optional[str], interval_sec: float, min_distance_m: float) -> None:
        self._disarm()
        self.interval_sec = interval_sec
        self.min_distance_m = min_distance_m
        self._route_fix = anchor
        self._sampler = Sampler.arm(
            self.device,
            job_id=job_id,
            anchor=anchor,
            interval_sec=interval_sec,
            min_distance_m=min_distance_m,
            forward=self._forward_sample,
            clock=self._clock,
        )

    def _disarm(self) -> None:
        if self._sampler is not None:
            self._sampler.disarm()
            self._sampler = None

    def _set_off(self) -> None:
        self.mode = MODE_OFF
        self.job_id = None
        self.standalone = False
        self.interval_sec = None
        self.min_distance_m = None
        self._route_fix = None

    def _forward_sample(self, position: Position, job_id: Optional[str]) -> None:
        self._route_fix = position
        # At-most-once: a sample that cannot be sent right now is dropped.
        self.channel.emit_nowait(EVENT_UPDATE_LOCATION, self._location_payload(job_id, position))

    def _location_payload(self, job_id: Optional[str], position: Position) -> dict:
        return {"techId": self.tech_id, "jobId": job_id, "lat": position.lat, "lng": position.lng}

    def _busy_text(self) -> str:
        if self.standalone:
            return "Location sharing is active."
        if self.job_id:
            return f"Tracking is active for job {self.job_id}."
        return "Tracking is busy."
