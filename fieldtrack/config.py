import os

from fieldtrack.models import AccuracyTier

BOT_TOKEN = os.getenv("BOT_TOKEN", "")
JOB_API_BASE = os.getenv("JOB_API_BASE", "http://127.0.0.1:3000/api")
SOCKET_URL = os.getenv("SOCKET_URL", "http://127.0.0.1:3000")

SOCKET_RECONNECT_ATTEMPTS = int(os.getenv("SOCKET_RECONNECT_ATTEMPTS", "5"))
SOCKET_RECONNECT_DELAY_SEC = float(os.getenv("SOCKET_RECONNECT_DELAY_SEC", "1.0"))
SOCKET_CONNECT_TIMEOUT_SEC = float(os.getenv("SOCKET_CONNECT_TIMEOUT_SEC", "10"))

# Last-known fix is reused only if it is younger than this
LAST_KNOWN_MAX_AGE_SEC = int(os.getenv("LAST_KNOWN_MAX_AGE_SEC", "600"))

DEFAULT_TIERS_RAW = "high:20:15,balanced:100:12,low:500:10,lowest:any:10"


def _parse_tiers(raw: str) -> list[AccuracyTier]:
    tiers: list[AccuracyTier] = []
    for item in raw.split(","):
        parts = [part.strip() for part in item.split(":")]
        if len(parts) != 3 or not parts[0]:
            continue
        name, accuracy_raw, timeout_raw = parts
        try:
            max_accuracy = None if accuracy_raw.lower() in {"any", ""} else float(accuracy_raw)
            timeout_sec = float(timeout_raw)
        except ValueError:
            continue
        if timeout_sec < 0:
            continue
        tiers.append(AccuracyTier(name=name, max_accuracy_m=max_accuracy, timeout_sec=timeout_sec))
    return tiers or _parse_tiers(DEFAULT_TIERS_RAW)


ACQUIRE_TIERS = _parse_tiers(os.getenv("ACQUIRE_TIERS", DEFAULT_TIERS_RAW))

JOB_SAMPLE_INTERVAL_SEC = float(os.getenv("JOB_SAMPLE_INTERVAL_SEC", "5"))
JOB_SAMPLE_MIN_DISTANCE_M = float(os.getenv("JOB_SAMPLE_MIN_DISTANCE_M", "10"))
STANDALONE_SAMPLE_INTERVAL_SEC = float(os.getenv("STANDALONE_SAMPLE_INTERVAL_SEC", "10"))
STANDALONE_SAMPLE_MIN_DISTANCE_M = float(os.getenv("STANDALONE_SAMPLE_MIN_DISTANCE_M", "20"))

# "No live location updates for a while" check
ENABLE_STALE_CHECK = os.getenv("ENABLE_STALE_CHECK", "1") not in {"0", "false", "False"}
STALE_CHECK_EVERY_SEC = int(os.getenv("STALE_CHECK_EVERY_SEC", "30"))
STALE_AFTER_SEC = int(os.getenv("STALE_AFTER_SEC", "90"))
STALE_NOTIFY_COOLDOWN_SEC = int(os.getenv("STALE_NOTIFY_COOLDOWN_SEC", "180"))

HTTP_TIMEOUT_SEC = int(os.getenv("HTTP_TIMEOUT_SEC", "10"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# /register conversation states
REG_NAME, REG_EMAIL, REG_PASSWORD = range(3)
REG_MIN_PASSWORD_LEN = int(os.getenv("REG_MIN_PASSWORD_LEN", "6"))
