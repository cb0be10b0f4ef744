from dataclasses import dataclass
from typing import Dict, Optional

from fieldtrack import config
from fieldtrack.acquisition import LocationAcquisitionEngine
from fieldtrack.channel import ConnectionManager
from fieldtrack.coordinator import JobLifecycleCoordinator
from fieldtrack.job_client import JobServiceClient
from fieldtrack.telegram_device import TelegramLocationFeed
from fieldtrack.tracking import TrackingSession


@dataclass
class TechnicianSession:
    user_id: int
    chat_id: int
    identity: str
    name: str
    job_client: JobServiceClient
    feed: TelegramLocationFeed
    channel: ConnectionManager
    tracking: TrackingSession
    coordinator: JobLifecycleCoordinator
    last_stale_notify_ts: float = 0.0

    async def close(self) -> None:
        await self.coordinator.logout()
        await self.job_client.aclose()


def build_technician_session(
    *,
    user_id: int,
    chat_id: int,
    technician: dict,
    job_client: JobServiceClient,
    logger,
    feed: Optional[TelegramLocationFeed] = None,
    channel: Optional[ConnectionManager] = None,
) -> TechnicianSession:
    identity = str(technician.get("id") or "")
    if not identity:
        raise ValueError("technician record has no id")

    feed = feed or TelegramLocationFeed()
    channel = channel or ConnectionManager(
        config.SOCKET_URL,
        logger,
        reconnect_attempts=config.SOCKET_RECONNECT_ATTEMPTS,
        reconnect_delay_sec=config.SOCKET_RECONNECT_DELAY_SEC,
        connect_timeout_sec=config.SOCKET_CONNECT_TIMEOUT_SEC,
    )
    engine = LocationAcquisitionEngine(
        feed,
        logger,
        tiers=config.ACQUIRE_TIERS,
        max_last_known_age_sec=config.LAST_KNOWN_MAX_AGE_SEC,
    )
    tracking = TrackingSession(
        engine,
        channel,
        feed,
        logger,
        job_interval_sec=config.JOB_SAMPLE_INTERVAL_SEC,
        job_min_distance_m=config.JOB_SAMPLE_MIN_DISTANCE_M,
        standalone_interval_sec=config.STANDALONE_SAMPLE_INTERVAL_SEC,
        standalone_min_distance_m=config.STANDALONE_SAMPLE_MIN_DISTANCE_M,
    )
    coordinator = JobLifecycleCoordinator(identity, job_client, tracking, channel, logger)
    return TechnicianSession(
        user_id=user_id,
        chat_id=chat_id,
        identity=identity,
        name=str(technician.get("name") or technician.get("email") or identity),
        job_client=job_client,
        feed=feed,
        channel=channel,
        tracking=tracking,
        coordinator=coordinator,
    )


class SessionStore:
    def __init__(self) -> None:
        self._sessions: Dict[int, TechnicianSession] = {}

    def get(self, user_id: int) -> Optional[TechnicianSession]:
        return self._sessions.get(user_id)

    def add(self, session: TechnicianSession) -> None:
        self._sessions[session.user_id] = session

    def pop(self, user_id: int) -> Optional[TechnicianSession]:
        return self._sessions.pop(user_id, None)

    def values(self):
        return self._sessions.values()

    def is_empty(self) -> bool:
        return not self._sessions
