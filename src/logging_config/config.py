"""Logging options for the push service, built from Settings."""

import logging
from dataclasses import dataclass
from enum import Enum

# Polled by load balancers and the cron runner; not worth a log line each.
QUIET_PATHS = ("/notifications/health", "/notifications/metrics")


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"

    @property
    def numeric(self) -> int:
        return logging.getLevelName(self.value)


class LogFormat(str, Enum):
    """``json`` for deployed instances, ``console`` for a local terminal."""
    JSON = "json"
    CONSOLE = "console"


@dataclass
class LoggingConfig:
    level: LogLevel = LogLevel.INFO
    format: LogFormat = LogFormat.JSON
    include_caller: bool = True
    exclude_paths: tuple[str, ...] = QUIET_PATHS
    service_name: str = "xsite-push"

    @classmethod
    def from_settings(cls, settings) -> "LoggingConfig":
        """Unknown level or format names fall back to INFO and JSON."""
        level = settings.log_level.upper()
        fmt = settings.log_format.lower()
        return cls(
            level=LogLevel(level) if level in LogLevel.__members__ else LogLevel.INFO,
            format=LogFormat.CONSOLE if fmt == LogFormat.CONSOLE.value else LogFormat.JSON,
            service_name=settings.app_name,
        )


DEFAULT_LOGGING_CONFIG = LoggingConfig()
