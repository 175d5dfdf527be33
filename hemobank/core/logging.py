"""
Logging setup: console always, plus a rotating file outside debug.

Every record carries a request_id ("N/A" outside a request) so formats may
reference it.
"""
import logging
import logging.handlers
import os
import sys

from hemobank.core.config import settings

# third-party loggers that are too chatty at INFO
QUIET_LOGGERS = {
    "uvicorn.access": logging.INFO,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "asyncio": logging.WARNING,
}


class RequestIDFilter(logging.Filter):
    def filter(self, record):
        if not hasattr(record, "request_id"):
            record.request_id = "N/A"
        return True


def _rotating_file(path: str, level: int) -> logging.Handler:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
    )
    handler.setLevel(level)
    return handler


def setup_logging() -> logging.Logger:
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    formatter = logging.Formatter(settings.LOG_FORMAT)
    request_ids = RequestIDFilter()

    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handlers = [logging.StreamHandler(sys.stdout)]
    if not settings.DEBUG:
        handlers.append(_rotating_file(settings.LOG_FILE, level))
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(request_ids)
        root.addHandler(handler)

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(max(quiet_level, level))

    return logging.getLogger("hemobank")


logger = setup_logging()
