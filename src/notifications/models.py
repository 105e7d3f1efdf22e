"""Data models for Push Notifications."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional
import uuid

from src.notifications.config import (
    DEFAULT_VALIDATION_SCORE,
    NotificationPriority,
    Platform,
    RecipientType,
    ResolutionSource,
    TicketStatus,
    TokenFormat,
    UserType,
)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def mask_token(token: Optional[str], visible: int = 20) -> str:
    """Shorten a token for logs and API responses."""
    if not token:
        return ""
    if len(token) <= visible:
        return token
    return f"{token[:visible]}..."


@dataclass(frozen=True)
class TokenMetadata:
    """Format details extracted while validating a token."""

    token_type: Optional[str] = None
    platform: Optional[str] = None
    is_legacy: Optional[bool] = None

    def to_dict(self) -> dict:
        return {
            "token_type": self.token_type,
            "platform": self.platform,
            "is_legacy": self.is_legacy,
        }


@dataclass(frozen=True)
class TokenValidationResult:
    """Outcome of validating a single token string."""

    is_valid: bool
    format: TokenFormat
    errors: tuple[str, ...] = ()
    metadata: TokenMetadata = field(default_factory=TokenMetadata)

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "format": self.format.value,
            "errors": list(self.errors),
            "metadata": self.metadata.to_dict(),
        }


@dataclass
class HealthMetrics:
    """Health bookkeeping for a stored token."""

    last_health_check: Optional[datetime] = None
    validation_score: int = DEFAULT_VALIDATION_SCORE
    is_healthy: bool = True
    failure_count: int = 0
    success_count: int = 0
    last_failure: Optional[datetime] = None
    last_success: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "last_health_check": _iso(self.last_health_check),
            "validation_score": self.validation_score,
            "is_healthy": self.is_healthy,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure": _iso(self.last_failure),
            "last_success": _iso(self.last_success),
        }


@dataclass
class ValidationErrorEntry:
    """One entry of a token's validation error log."""

    error: str
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {"error": self.error, "timestamp": self.timestamp.isoformat()}


@dataclass
class PushToken:
    """Registered push token for a user's device."""

    user_id: str
    token: str
    platform: Platform
    user_type: UserType = UserType.STAFF
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    app_version: Optional[str] = None
    is_active: bool = True
    health: HealthMetrics = field(default_factory=HealthMetrics)
    validation_errors: list[ValidationErrorEntry] = field(default_factory=list)
    token_metadata: TokenMetadata = field(default_factory=TokenMetadata)
    token_format: TokenFormat = TokenFormat.UNKNOWN
    deactivation_reason: Optional[str] = None
    deactivated_at: Optional[datetime] = None
    last_used: datetime = field(default_factory=_now)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def to_dict(self, include_token: bool = False) -> dict:
        return {
            "user_id": self.user_id,
            "user_type": self.user_type.value,
            "token": self.token if include_token else mask_token(self.token),
            "platform": self.platform.value,
            "device_id": self.device_id,
            "device_name": self.device_name,
            "app_version": self.app_version,
            "is_active": self.is_active,
            "health": self.health.to_dict(),
            "validation_errors": [e.to_dict() for e in self.validation_errors],
            "token_format": self.token_format.value,
            "token_metadata": self.token_metadata.to_dict(),
            "deactivation_reason": self.deactivation_reason,
            "deactivated_at": _iso(self.deactivated_at),
            "last_used": _iso(self.last_used),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class Recipient:
    """A user that should receive a notification, with deliverable tokens."""

    user_id: str
    user_type: UserType
    full_name: str = ""
    tokens: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "user_type": self.user_type.value,
            "full_name": self.full_name,
            "token_count": len(self.tokens),
        }


@dataclass(frozen=True)
class ResolutionResult:
    """Deduplicated recipients for a (client, project, recipient type) key."""

    client_id: str
    project_id: Optional[str]
    recipient_type: RecipientType
    recipients: tuple[Recipient, ...] = ()
    source: ResolutionSource = ResolutionSource.PRIMARY
    errors: tuple[str, ...] = ()
    resolution_time_ms: float = 0.0
    deduplication_count: int = 0
    resolved_at: datetime = field(default_factory=_now)

    @property
    def recipient_count(self) -> int:
        return len(self.recipients)

    @property
    def cache_key(self) -> tuple[str, Optional[str], RecipientType]:
        return (self.client_id, self.project_id, self.recipient_type)

    def with_source(self, source: ResolutionSource, resolution_time_ms: float) -> "ResolutionResult":
        """Copy of this result reported under a different source."""
        return replace(self, source=source, resolution_time_ms=resolution_time_ms)

    def user_ids(self) -> list[str]:
        return [r.user_id for r in self.recipients]

    def to_dict(self) -> dict:
        return {
            "client_id": self.client_id,
            "project_id": self.project_id,
            "recipient_type": self.recipient_type.value,
            "recipients": [r.to_dict() for r in self.recipients],
            "source": self.source.value,
            "errors": list(self.errors),
            "resolution_time_ms": round(self.resolution_time_ms, 2),
            "recipient_count": self.recipient_count,
            "deduplication_count": self.deduplication_count,
        }


@dataclass
class PushMessage:
    """A single outbound gateway message."""

    to: str
    title: str
    body: str
    data: dict = field(default_factory=dict)
    priority: NotificationPriority = NotificationPriority.HIGH
    sound: Optional[str] = "default"
    ttl: Optional[int] = None
    user_id: Optional[str] = None

    def to_payload(self) -> dict:
        """Convert to the gateway JSON payload."""
        payload: dict[str, Any] = {
            "to": self.to,
            "title": self.title,
            "body": self.body,
            "data": self.data,
            "priority": self.priority.value,
        }
        if self.sound:
            payload["sound"] = self.sound
        if self.ttl is not None:
            payload["ttl"] = self.ttl
        return payload


@dataclass(frozen=True)
class PushTicket:
    """Gateway acknowledgement for one message."""

    status: TicketStatus
    message: Optional[str] = None
    ticket_id: Optional[str] = None
    details: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == TicketStatus.OK


@dataclass(frozen=True)
class NotificationPayload:
    """Title, body and data for one notification, before addressing."""

    title: str
    body: str
    data: dict = field(default_factory=dict)
    priority: NotificationPriority = NotificationPriority.HIGH
    sound: Optional[str] = "default"


@dataclass(frozen=True)
class NotificationDeliveryResult:
    """Bookkeeping for one delivery call."""

    notification_id: str
    recipient_count: int = 0
    delivered_count: int = 0
    failed_count: int = 0
    errors: tuple[str, ...] = ()
    processing_time_ms: float = 0.0
    chunks_sent: int = 0
    chunks_failed: int = 0
    created_at: datetime = field(default_factory=_now)

    @property
    def success(self) -> bool:
        """True unless every attempted target failed."""
        if self.recipient_count == 0:
            return True
        return self.delivered_count > 0 or self.failed_count == 0

    def to_dict(self) -> dict:
        return {
            "notification_id": self.notification_id,
            "recipient_count": self.recipient_count,
            "delivered_count": self.delivered_count,
            "failed_count": self.failed_count,
            "errors": list(self.errors),
            "processing_time_ms": round(self.processing_time_ms, 2),
            "chunks_sent": self.chunks_sent,
            "chunks_failed": self.chunks_failed,
            "success": self.success,
        }
