"""Operation Context Management.

Binds operation-scoped identifiers (request, maintenance job, client,
notification) to every log line emitted inside the context, using
contextvars so concurrent deliveries never see each other's fields.
"""

import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

CONTEXT_FIELDS = ("request_id", "job_id", "client_id", "notification_id")

_context_var: ContextVar[dict] = ContextVar("operation_context", default={})


def generate_request_id() -> str:
    """Generate a unique request ID using UUID4."""
    return str(uuid.uuid4())


def get_context_dict() -> dict[str, Any]:
    """Get the bound context as a dictionary for log binding."""
    return dict(_context_var.get())


def get_context_value(name: str) -> Optional[Any]:
    return _context_var.get().get(name)


@dataclass
class OperationContext:
    """Context manager for operation-scoped logging context.

    Fields left empty are not bound. Nested contexts inherit the outer
    fields and restore them on exit.

    Example:
        with OperationContext(job_id="maint_1700000000_ab12cd"):
            logger.info("cleanup started")  # includes job_id
    """

    request_id: str = ""
    job_id: str = ""
    client_id: str = ""
    notification_id: str = ""
    extra: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    _token: Any = field(default=None, repr=False)

    def __enter__(self) -> "OperationContext":
        bound = dict(_context_var.get())
        for name in CONTEXT_FIELDS:
            value = getattr(self, name)
            if value:
                bound[name] = value
        bound.update(self.extra)
        self._token = _context_var.set(bound)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._token is not None:
            _context_var.reset(self._token)
            self._token = None

    @property
    def elapsed_ms(self) -> float:
        """Milliseconds since context was created."""
        delta = datetime.now(timezone.utc) - self.started_at
        return delta.total_seconds() * 1000

    def bind(self, **kwargs: Any) -> None:
        """Add extra key-value pairs to the active context."""
        _context_var.set({**_context_var.get(), **kwargs})
        self.extra.update(kwargs)
