"""Exception hierarchy for the push-notification subsystem.

Only boundary errors (bad caller input) and the maintenance concurrency
conflict are raised to callers. The rest are raised internally and turned
into result fields by the component that owns them.
"""

from typing import Optional


class NotificationError(Exception):
    """Base exception for all push-notification errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRequestError(NotificationError):
    """Raised when a caller omits or malforms a required identifier."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class ResolutionError(NotificationError):
    """Raised when a recipient lookup against the store or directory fails."""


class StoreTimeoutError(NotificationError):
    """Raised when a token store call does not return within its timeout."""


class DeliveryError(NotificationError):
    """Raised when the gateway rejects or fails a whole chunk."""


class GatewayTimeoutError(DeliveryError):
    """Raised when a gateway call exceeds its timeout."""


class MaintenanceError(NotificationError):
    """Raised when a maintenance phase cannot read the token store at all."""


class MaintenanceAlreadyRunningError(NotificationError):
    """Raised when a maintenance job is triggered while another is running.

    Retryable: the caller may try again once the running job completes.
    """

    retryable = True

    def __init__(self, running_job_id: Optional[str] = None):
        message = "Maintenance job is already running"
        if running_job_id:
            message = f"{message} ({running_job_id})"
        super().__init__(message)
        self.running_job_id = running_job_id
