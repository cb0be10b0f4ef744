from typing import Optional

from fieldtrack.errors import ExternalServiceError, FieldTrackError, JobMismatch, TrackingStopFailed
from fieldtrack.models import (
    JOB_ACCEPTED,
    JOB_ASSIGNED,
    JOB_COMPLETED,
    JOB_IN_PROGRESS,
    MODE_OFF,
    Job,
    Position,
    TrackingStatus,
)


class JobLifecycleCoordinator:
    """Ties job actions to tracking start/stop for one logged-in technician.

    Local job status is written only from job-service responses.
    """

    def __init__(self, identity: str, job_client, tracking, channel, logger) -> None:
        if not identity:
            raise ValueError("identity is required")
        self.identity = str(identity)
        self.job_client = job_client
        self.tracking = tracking
        self.channel = channel
        self.logger = logger
        self.jobs: dict[str, Job] = {}
        self.active_job_id: Optional[str] = None

    def _check_identity(self, identity: str) -> str:
        if str(identity) != self.identity:
            raise ValueError(f"identity {identity!r} does not match the logged-in technician")
        return self.identity

    def _apply(self, payload: dict) -> Job:
        job = Job.from_api(payload)
        self.jobs[job.id] = job
        if job.status == JOB_IN_PROGRESS:
            self.active_job_id = job.id
        elif self.active_job_id == job.id:
            self.active_job_id = None
        return job

    async def refresh_jobs(self) -> list[Job]:
        jobs: list[Job] = []
        for item in await self.job_client.get_my_jobs(self.identity):
            try:
                jobs.append(Job.from_api(item))
            except ValueError as exc:
                self.logger.warning("JOB_SKIPPED_BAD_RECORD tech_id=%s error=%s", self.identity, exc)
        self.jobs = {job.id: job for job in jobs}
        in_progress = next((job for job in jobs if job.status == JOB_IN_PROGRESS), None)
        self.active_job_id = in_progress.id if in_progress else None
        self.logger.info(
            "JOBS_REFRESHED tech_id=%s count=%s active_job_id=%s",
            self.identity,
            len(jobs),
            self.active_job_id,
        )
        return jobs

    async def accept(self, job_id: str) -> Job:
        job = self._apply(await self.job_client.accept_job(str(job_id)))
        self.logger.info("JOB_ACCEPTED job_id=%s status=%s", job.id, job.status)
        return job

    async def start(self, job_id: str, identity: str, progress=None) -> Job:
        tech_id = self._check_identity(identity)
        job_id = str(job_id)
        await self.tracking.start_for_job(job_id, progress)

        try:
            payload = await self.job_client.start_job(job_id, tech_id)
            job = Job.from_api(payload)
            if job.status != JOB_IN_PROGRESS:
                raise ExternalServiceError(f"Job service left job {job_id} in status {job.status}.")
        except Exception as exc:
            self.logger.warning("JOB_START_REJECTED job_id=%s error=%s -> rollback tracking", job_id, exc)
            await self._rollback_tracking(job_id)
            raise

        job = self._apply(payload)
        self.logger.info("JOB_STARTED job_id=%s tech_id=%s", job.id, tech_id)
        return job

    async def complete(self, job_id: str, identity: str, progress=None) -> Job:
        tech_id = self._check_identity(identity)
        job_id = str(job_id)
        stop_error: Optional[FieldTrackError] = None
        try:
            if self._has_detached_route(job_id):
                await self.tracking.close_route(job_id, progress)
            else:
                await self.tracking.stop_for_job(job_id, progress)
        except JobMismatch:
            raise
        except FieldTrackError as exc:
            stop_error = exc
            self.logger.warning("JOB_COMPLETE_TRACKING_STOP_FAILED job_id=%s error=%s", job_id, exc)
            if self.tracking.job_id == job_id:
                self.tracking.reset("complete")

        job = self._apply(await self.job_client.complete_job(job_id, tech_id))
        self.logger.info("JOB_COMPLETED job_id=%s status=%s tracking_error=%s", job.id, job.status, stop_error)
        if stop_error is not None:
            raise TrackingStopFailed(
                f"Job {job_id} was completed, but tracking did not stop cleanly: {stop_error}",
                job=job,
            ) from stop_error
        return job

    async def share_location(self, enabled: bool, progress=None) -> Optional[Position]:
        return await self.tracking.toggle_standalone(enabled, progress)

    async def send_location_now(self, progress=None) -> Position:
        return await self.tracking.send_current_location(progress)

    def stats(self) -> dict:
        statuses = [job.status for job in self.jobs.values()]
        return {
            "total": len(statuses),
            "pending": statuses.count(JOB_ASSIGNED),
            "active": sum(1 for status in statuses if status in {JOB_ACCEPTED, JOB_IN_PROGRESS}),
            "completed": statuses.count(JOB_COMPLETED),
        }

    def status(self) -> TrackingStatus:
        return self.tracking.status()

    async def logout(self) -> None:
        await self.channel.disconnect()
        self.jobs = {}
        self.active_job_id = None
        self.logger.info("TECH_LOGGED_OUT tech_id=%s", self.identity)

    def _has_detached_route(self, job_id: str) -> bool:
        job = self.jobs.get(job_id)
        return job is not None and job.status == JOB_IN_PROGRESS and self.tracking.mode == MODE_OFF

    async def _rollback_tracking(self, job_id: str) -> None:
        try:
            await self.tracking.stop_for_job(job_id)
        except FieldTrackError as exc:
            self.logger.warning("JOB_START_ROLLBACK_STOP_FAILED job_id=%s error=%s", job_id, exc)
