from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

JOB_ASSIGNED = "ASSIGNED"
JOB_ACCEPTED = "ACCEPTED"
JOB_IN_PROGRESS = "IN_PROGRESS"
JOB_COMPLETED = "COMPLETED"
JOB_CANCELLED = "CANCELLED"

JOB_STATUSES = {JOB_ASSIGNED, JOB_ACCEPTED, JOB_IN_PROGRESS, JOB_COMPLETED, JOB_CANCELLED}

MODE_OFF = "off"
MODE_ACQUIRING_FIX = "acquiring_fix"
MODE_TRACKING = "tracking"
MODE_STOPPING_REQUESTED = "stopping_requested"

CHANNEL_DISCONNECTED = "disconnected"
CHANNEL_CONNECTING = "connecting"
CHANNEL_CONNECTED = "connected"
CHANNEL_RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class Position:
    lat: float
    lng: float
    accuracy_m: Optional[float] = None
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def age_sec(self, now: datetime | None = None) -> float:
        now = now or datetime.now(timezone.utc)
        return max((now - self.captured_at).total_seconds(), 0.0)


@dataclass(frozen=True)
class AccuracyTier:
    name: str
    max_accuracy_m: Optional[float]
    timeout_sec: float

    def accepts(self, accuracy_m: Optional[float]) -> bool:
        if self.max_accuracy_m is None:
            return True
        if accuracy_m is None:
            return False
        return accuracy_m <= self.max_accuracy_m


@dataclass
class Job:
    id: str
    status: str
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_api(cls, payload: dict) -> "Job":
        job_id = payload.get("id") or payload.get("_id") or payload.get("jobId")
        if job_id is None:
            raise ValueError(f"job payload without id: {payload!r}")
        status = str(payload.get("status") or JOB_ASSIGNED).upper()
        return cls(id=str(job_id), status=status, raw=dict(payload))

    @property
    def title(self) -> str:
        return str(self.raw.get("title") or self.raw.get("name") or f"Job {self.id}")


@dataclass(frozen=True)
class TrackingStatus:
    mode: str
    job_id: Optional[str]
    is_connected: bool
    standalone: bool

    @property
    def is_tracking(self) -> bool:
        return self.mode == MODE_TRACKING
