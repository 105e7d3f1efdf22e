"""Structured Logging & Operation Tracing.

Provides structured JSON logging and contextvars-bound identifiers
(request, maintenance job, client, notification) for the push service.
"""

from src.logging_config.config import LogFormat, LoggingConfig, LogLevel
from src.logging_config.context import (
    OperationContext,
    generate_request_id,
    get_context_dict,
)
from src.logging_config.middleware import RequestTracingMiddleware
from src.logging_config.setup import (
    ConsoleFormatter,
    StructuredFormatter,
    configure_logging,
)

__all__ = [
    "ConsoleFormatter",
    "LogFormat",
    "LogLevel",
    "LoggingConfig",
    "OperationContext",
    "RequestTracingMiddleware",
    "StructuredFormatter",
    "configure_logging",
    "generate_request_id",
    "get_context_dict",
]
