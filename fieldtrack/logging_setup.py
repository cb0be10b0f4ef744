import logging

from fieldtrack import config

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(level: str | None = None) -> logging.Logger:
    logging.basicConfig(format=LOG_FORMAT, level=(level or config.LOG_LEVEL).upper())
    # httpx logs every request at INFO; the client logs its own request lines
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("socketio").setLevel(logging.WARNING)
    logging.getLogger("engineio").setLevel(logging.WARNING)
    return logging.getLogger("fieldtrack")
