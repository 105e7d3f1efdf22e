"""Xsite Push Notifications.

Push notification subsystem for site activity:
- Token validation and health scoring (Expo, FCM, APNs)
- Token store with failure-driven auto-deactivation
- Recipient resolution with caching, fallback and deduplication
- Chunked delivery with partial-failure bookkeeping

The composition root lives in ``src.notifications.service`` and the
HTTP routes in ``src.notifications.routes``.
"""

from src.notifications.config import (
    TokenFormat,
    Platform,
    UserType,
    RecipientType,
    ResolutionSource,
    NotificationPriority,
    TicketStatus,
    NotificationConfig,
    DEFAULT_NOTIFICATION_CONFIG,
)
from src.notifications.errors import (
    NotificationError,
    InvalidRequestError,
    ResolutionError,
    StoreTimeoutError,
    DeliveryError,
    GatewayTimeoutError,
    MaintenanceError,
    MaintenanceAlreadyRunningError,
)
from src.notifications.models import (
    TokenValidationResult,
    PushToken,
    Recipient,
    ResolutionResult,
    PushMessage,
    PushTicket,
    NotificationPayload,
    NotificationDeliveryResult,
)
from src.notifications.validation import TokenValidator, validate_token
from src.notifications.token_store import BaseTokenStore, InMemoryTokenStore
from src.notifications.directory import (
    DirectoryEntry,
    RecipientDirectory,
    InMemoryRecipientDirectory,
)
from src.notifications.recipients import RecipientCache, RecipientResolver
from src.notifications.gateway import BasePushGateway, ExpoPushGateway, MockPushGateway
from src.notifications.sender import NotificationSender
from src.notifications.metrics import DeliveryMetrics, MetricsSnapshot
from src.notifications.activities import (
    ActivityKind,
    MaterialAction,
    build_notification,
    parse_activity,
)

__all__ = [
    # Config
    "TokenFormat",
    "Platform",
    "UserType",
    "RecipientType",
    "ResolutionSource",
    "NotificationPriority",
    "TicketStatus",
    "NotificationConfig",
    "DEFAULT_NOTIFICATION_CONFIG",
    # Errors
    "NotificationError",
    "InvalidRequestError",
    "ResolutionError",
    "StoreTimeoutError",
    "DeliveryError",
    "GatewayTimeoutError",
    "MaintenanceError",
    "MaintenanceAlreadyRunningError",
    # Models
    "TokenValidationResult",
    "PushToken",
    "Recipient",
    "ResolutionResult",
    "PushMessage",
    "PushTicket",
    "NotificationPayload",
    "NotificationDeliveryResult",
    # Components
    "TokenValidator",
    "validate_token",
    "BaseTokenStore",
    "InMemoryTokenStore",
    "DirectoryEntry",
    "RecipientDirectory",
    "InMemoryRecipientDirectory",
    "RecipientCache",
    "RecipientResolver",
    "BasePushGateway",
    "ExpoPushGateway",
    "MockPushGateway",
    "NotificationSender",
    "DeliveryMetrics",
    "MetricsSnapshot",
    # Activities
    "ActivityKind",
    "MaterialAction",
    "build_notification",
    "parse_activity",
]
