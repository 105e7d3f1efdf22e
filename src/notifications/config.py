"""Configuration for Push Notifications."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class TokenFormat(Enum):
    """Push token syntactic families."""
    EXPO = "EXPO"
    FCM = "FCM"
    APNS = "APNS"
    UNKNOWN = "UNKNOWN"


class Platform(Enum):
    """Mobile platforms."""
    IOS = "ios"
    ANDROID = "android"
    WEB = "web"


class UserType(Enum):
    """Kinds of users that can own a push token."""
    ADMIN = "admin"
    STAFF = "staff"
    CLIENT_ADMIN = "client-admin"
    CUSTOMER = "customer"


class RecipientType(Enum):
    """Which part of a client's organisation to notify."""
    ADMINS = "admins"
    STAFF = "staff"
    ALL = "all"


class ResolutionSource(Enum):
    """Where a recipient list came from."""
    PRIMARY = "PRIMARY"
    CACHE = "CACHE"
    FALLBACK = "FALLBACK"


class NotificationPriority(Enum):
    """Gateway priority levels."""
    DEFAULT = "default"
    NORMAL = "normal"
    HIGH = "high"


class TicketStatus(Enum):
    """Per-message gateway ticket status."""
    OK = "ok"
    ERROR = "error"


# Token format limits
MIN_TOKEN_LENGTH = 10
MAX_TOKEN_LENGTH = 4096
FCM_ANDROID_MIN_LENGTH = 140
FCM_WEB_MIN_LENGTH = 152
APNS_TOKEN_LENGTH = 64
UNREGISTERED_MARKER = "UNREGISTERED"

# Defaults applied to a freshly registered token until its first health check
DEFAULT_VALIDATION_SCORE = 100

# Score bucket labels used by statistics
SCORE_BUCKETS: tuple[tuple[str, int, int], ...] = (
    ("0-25", 0, 25),
    ("26-50", 26, 50),
    ("51-75", 51, 75),
    ("76-100", 76, 100),
)


@dataclass
class NotificationConfig:
    """Notification system configuration."""

    # Token health
    health_score_cutoff: int = 50
    low_score_deactivation: int = 25
    failure_deactivation_threshold: int = 5
    unhealthy_failure_threshold: int = 3
    hard_delete_age_days: int = 90

    # Recipient resolution
    recipient_cache_ttl_seconds: float = 300.0
    recipient_cache_max_entries: int = 1024
    store_timeout_seconds: float = 5.0

    # Delivery
    max_chunk_size: int = 100
    chunk_delay_seconds: float = 0.0
    send_timeout_seconds: float = 10.0
    message_ttl_seconds: int = 3600
    default_sound: Optional[str] = "default"
    default_priority: NotificationPriority = NotificationPriority.HIGH

    @classmethod
    def from_settings(cls, settings) -> "NotificationConfig":
        """Build a config from the process-wide Settings."""
        return cls(
            health_score_cutoff=settings.health_score_cutoff,
            low_score_deactivation=settings.low_score_deactivation,
            failure_deactivation_threshold=settings.failure_deactivation_threshold,
            unhealthy_failure_threshold=settings.unhealthy_failure_threshold,
            hard_delete_age_days=settings.hard_delete_age_days,
            recipient_cache_ttl_seconds=settings.recipient_cache_ttl_seconds,
            recipient_cache_max_entries=settings.recipient_cache_max_entries,
            store_timeout_seconds=settings.store_timeout_seconds,
            max_chunk_size=settings.gateway_max_chunk_size,
            chunk_delay_seconds=settings.gateway_chunk_delay_seconds,
            send_timeout_seconds=settings.gateway_timeout_seconds,
            message_ttl_seconds=settings.message_ttl_seconds,
        )


DEFAULT_NOTIFICATION_CONFIG = NotificationConfig()
