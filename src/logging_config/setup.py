"""Root logger configuration for the push service.

Deployed instances log one JSON object per line so delivery and
maintenance runs can be followed by ``notification_id`` or ``job_id``.
Local runs get a short single-line console format instead.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from src.logging_config.config import DEFAULT_LOGGING_CONFIG, LogFormat, LoggingConfig
from src.logging_config.context import get_context_dict

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

# Chatty at INFO: per-request access lines and per-statement SQL echo.
NOISY_LOGGERS = ("aiohttp.access", "sqlalchemy.engine", "httpx", "uvicorn.access")


def _extras(record: logging.LogRecord) -> dict:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


class StructuredFormatter(logging.Formatter):
    """One JSON object per record.

    Fields: time, level, logger, message, service, the caller location
    (optional), the bound operation context, ``extra=`` fields, and an
    ``exception`` object when the record carries one.
    """

    def __init__(self, service_name: str = "xsite-push", include_caller: bool = True):
        super().__init__()
        self.service_name = service_name
        self.include_caller = include_caller

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": datetime.fromtimestamp(record.created, timezone.utc).isoformat(
                timespec="milliseconds"
            ),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }
        if self.include_caller:
            entry["caller"] = f"{record.module}.{record.funcName}:{record.lineno}"

        entry.update(get_context_dict())
        entry.update(_extras(record))

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """``12:00:01 INFO    src.notifications.sender: message [notification_id=...]``"""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s", datefmt="%H:%M:%S")

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        ctx = get_context_dict()
        if ctx:
            line += " [" + ", ".join(f"{k}={v}" for k, v in ctx.items()) + "]"
        return line


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """Install a single stdout handler on the root logger.

    Replaces any handlers already installed, so calling it twice is safe.
    """
    config = config or DEFAULT_LOGGING_CONFIG

    if config.format == LogFormat.CONSOLE:
        formatter: logging.Formatter = ConsoleFormatter()
    else:
        formatter = StructuredFormatter(config.service_name, config.include_caller)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(config.level.numeric)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
