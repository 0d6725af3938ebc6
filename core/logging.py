"""Process-wide logging for the chat API."""

import logging
import os
import sys
from contextvars import ContextVar
from logging.handlers import WatchedFileHandler
from typing import Iterable

request_id_var: ContextVar[str] = ContextVar("request_id", default="")

LOG_FORMAT = "[%(asctime)s.%(msecs)03d] [%(levelname)-5s] [%(name)-20s] [%(request_id)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty client libraries; their INFO lines repeat for every SSE poll and publish
_NOISY_LOGGERS = ("urllib3", "httpx", "httpcore", "redis", "pusher")


class RequestIdFilter(logging.Filter):
    """Stamp each record with the id of the request that produced it ("-" outside requests)."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get() or "-"
        return True


def _has_handler(root: logging.Logger, kind: type, path: str = "") -> bool:
    for handler in root.handlers:
        if not isinstance(handler, kind):
            continue
        if not path or getattr(handler, "baseFilename", None) == path:
            return True
    return False


def _attach(root: logging.Logger, handler: logging.Handler, level: int) -> None:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    handler.addFilter(RequestIdFilter())
    root.addHandler(handler)


def _quiet(names: Iterable[str], level: int = logging.WARNING) -> None:
    for name in names:
        logging.getLogger(name).setLevel(level)


def configure_logging(*, environment: str, log_level: str) -> int:
    """
    Configure the root logger once per process and return the numeric level.

    Always logs to stdout. ``APP_LOG_PATH`` adds a file that survives logrotate.
    Uvicorn's own handlers are removed so its records use the same format.
    """
    level = getattr(logging, (log_level or "INFO").upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    if not _has_handler(root, logging.StreamHandler):
        _attach(root, logging.StreamHandler(sys.stdout), level)

    log_path = os.getenv("APP_LOG_PATH", "").strip()
    if log_path and not _has_handler(root, WatchedFileHandler, log_path):
        try:
            os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
            _attach(root, WatchedFileHandler(log_path), level)
        except OSError as exc:
            root.warning("Cannot write log file %s: %s", log_path, exc)

    _quiet(_NOISY_LOGGERS)
    if environment != "development":
        _quiet(["sqlalchemy.engine"])

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers.clear()
        uv_logger.propagate = True
        uv_logger.setLevel(level)
    # Access lines duplicate the request middleware's RESPONSE lines
    _quiet(["uvicorn.access"])

    return level
