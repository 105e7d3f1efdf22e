"""Push notification service.

Composition root for the notification subsystem: wires the token store,
recipient directory, push gateway, resolver, delivery engine, metrics
and maintenance scheduler together. Every collaborator is injected, so
tests and the HTTP layer can each build their own instance.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from src.maintenance.config import MaintenanceConfig, MaintenanceJobType, MaintenanceOptions
from src.maintenance.models import MaintenanceJobResult
from src.maintenance.scheduler import MaintenanceScheduler, MaintenanceStatus
from src.notifications.activities import (
    Activity,
    ActivityNotification,
    TransferActivity,
    build_notification,
    build_transfer_out_notification,
    parse_activity,
)
from src.notifications.config import (
    NotificationConfig,
    Platform,
    RecipientType,
    UserType,
)
from src.notifications.directory import InMemoryRecipientDirectory, RecipientDirectory
from src.notifications.errors import InvalidRequestError
from src.notifications.gateway import BasePushGateway, ExpoPushGateway
from src.notifications.metrics import DeliveryMetrics, MetricsSnapshot
from src.notifications.models import (
    NotificationDeliveryResult,
    NotificationPayload,
    PushToken,
    Recipient,
    ResolutionResult,
    _new_id,
    mask_token,
)
from src.notifications.recipients import RecipientResolver
from src.notifications.sender import NotificationSender
from src.notifications.token_store import BaseTokenStore, InMemoryTokenStore
from src.notifications.validation import TokenValidator
from src.logging_config.context import OperationContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferNotificationResult:
    """Outcome of notifying both projects of a material transfer."""

    primary: NotificationDeliveryResult
    secondary: Optional[NotificationDeliveryResult] = None

    @property
    def deliveries(self) -> tuple[NotificationDeliveryResult, ...]:
        return (self.primary,) if self.secondary is None else (self.primary, self.secondary)

    @property
    def success(self) -> bool:
        return all(d.success for d in self.deliveries)

    @property
    def recipient_count(self) -> int:
        return sum(d.recipient_count for d in self.deliveries)

    @property
    def delivered_count(self) -> int:
        return sum(d.delivered_count for d in self.deliveries)

    @property
    def failed_count(self) -> int:
        return sum(d.failed_count for d in self.deliveries)

    @property
    def errors(self) -> tuple[str, ...]:
        return tuple(e for d in self.deliveries for e in d.errors)

    def to_dict(self) -> dict:
        return {
            "primary": self.primary.to_dict(),
            "secondary": self.secondary.to_dict() if self.secondary else None,
            "success": self.success,
            "delivered_count": self.delivered_count,
            "failed_count": self.failed_count,
            "errors": list(self.errors),
        }


def _parse_enum(enum_cls, value, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise InvalidRequestError(
            f"Invalid {field_name}: {value!r} (expected one of: {allowed})",
            field=field_name,
        )


class PushNotificationService:
    """Token registration, activity notifications and maintenance in one place.

    Args:
        store: Token store.
        directory: Admin and staff membership per client and project.
        gateway: Push gateway the delivery engine submits chunks to.
        config: Notification configuration.
        maintenance_config: Maintenance schedule and policy.
        validator: Token validator shared by every component.
        metrics: Delivery metrics; a fresh instance when omitted.

    Example:
        service = PushNotificationService(store, directory, MockPushGateway())
        service.register_token("u1", "ExponentPushToken[abc123def456]", "ios")
        result = await service.notify_activity_created(payload)
    """

    def __init__(
        self,
        store: BaseTokenStore,
        directory: RecipientDirectory,
        gateway: BasePushGateway,
        config: Optional[NotificationConfig] = None,
        maintenance_config: Optional[MaintenanceConfig] = None,
        validator: Optional[TokenValidator] = None,
        metrics: Optional[DeliveryMetrics] = None,
    ):
        self.config = config or NotificationConfig()
        self.store = store
        self.directory = directory
        self.gateway = gateway
        self.validator = validator or TokenValidator()
        self.metrics = metrics or DeliveryMetrics()
        self.resolver = RecipientResolver(directory, store, config=self.config)
        self.sender = NotificationSender(
            store,
            gateway,
            validator=self.validator,
            config=self.config,
            metrics=self.metrics,
            cache=self.resolver.cache,
        )
        self.scheduler = MaintenanceScheduler(
            store,
            validator=self.validator,
            config=maintenance_config,
            recipient_cache=self.resolver.cache,
        )

    @classmethod
    def from_settings(
        cls,
        settings=None,
        directory: Optional[RecipientDirectory] = None,
        gateway: Optional[BasePushGateway] = None,
    ) -> "PushNotificationService":
        """Build a service from process settings.

        Uses the SQL token store when ``use_database`` is set and the Expo
        gateway unless one is given.
        """
        if settings is None:
            from src.settings import get_settings
            settings = get_settings()

        config = NotificationConfig.from_settings(settings)
        if settings.use_database:
            from src.notifications.sql_store import SQLTokenStore
            store: BaseTokenStore = SQLTokenStore(
                database_url=settings.database_url,
                failure_threshold=config.failure_deactivation_threshold,
                timeout_seconds=settings.store_timeout_seconds,
            )
        else:
            store = InMemoryTokenStore(failure_threshold=config.failure_deactivation_threshold)

        gateway = gateway or ExpoPushGateway(
            url=settings.expo_push_url,
            access_token=settings.expo_access_token or None,
            timeout_seconds=settings.gateway_timeout_seconds,
            max_chunk_size=settings.gateway_max_chunk_size,
        )
        return cls(
            store=store,
            directory=directory or InMemoryRecipientDirectory(),
            gateway=gateway,
            config=config,
            maintenance_config=MaintenanceConfig.from_settings(settings),
        )

    # ── Tokens ───────────────────────────────────────────────────────

    def register_token(
        self,
        user_id: str,
        token: str,
        platform: Union[Platform, str],
        user_type: Union[UserType, str] = UserType.STAFF,
        device_id: Optional[str] = None,
        device_name: Optional[str] = None,
        app_version: Optional[str] = None,
    ) -> tuple[PushToken, bool]:
        """Register or refresh a device token.

        The token format is recorded but not enforced here: malformed
        tokens are stored and filtered out at delivery time.

        Returns:
            The stored record and whether it was newly created.

        Raises:
            InvalidRequestError: user_id, token or platform missing or invalid.
        """
        if not user_id:
            raise InvalidRequestError("userId is required", field="user_id")
        if not token or not isinstance(token, str):
            raise InvalidRequestError("token is required", field="token")
        if not platform:
            raise InvalidRequestError("platform is required", field="platform")
        platform = _parse_enum(Platform, platform, "platform")
        user_type = _parse_enum(UserType, user_type, "user_type")

        validation = self.validator.validate(token)
        if not validation.is_valid:
            logger.warning(
                "Registering malformed push token %s for user %s: %s",
                mask_token(token),
                user_id,
                "; ".join(validation.errors),
            )

        stored, is_new = self.store.register(PushToken(
            user_id=user_id,
            token=token,
            platform=platform,
            user_type=user_type,
            device_id=device_id,
            device_name=device_name,
            app_version=app_version,
            token_format=validation.format,
            token_metadata=validation.metadata,
        ))
        if is_new:
            self.metrics.record_registration()
        return stored, is_new

    def deactivate_tokens(
        self,
        token: Optional[str] = None,
        user_id: Optional[str] = None,
        reason: str = "Deactivated by user",
    ) -> int:
        """Deactivate one token, or every active token of a user."""
        if not token and not user_id:
            raise InvalidRequestError("token or userId is required", field="token")

        if token:
            targets = [token]
        else:
            targets = [record.token for record in self.store.find_by_user(user_id)]

        count = sum(1 for t in targets if self.store.deactivate(t, reason))
        if count:
            self.metrics.record_deactivation(count)
            self.resolver.cache.invalidate_tokens(targets)
        logger.info("Deactivated %d push tokens (user=%s)", count, user_id or "-")
        return count

    def list_user_tokens(self, user_id: str, active_only: bool = True) -> list[PushToken]:
        if not user_id:
            raise InvalidRequestError("userId is required", field="user_id")
        return self.store.find_by_user(user_id, active_only=active_only)

    # ── Recipients ───────────────────────────────────────────────────

    def resolve_recipients(
        self,
        client_id: Optional[str],
        project_id: Optional[str] = None,
        recipient_type: Union[RecipientType, str] = RecipientType.ALL,
        skip_cache: bool = False,
    ) -> ResolutionResult:
        recipient_type = _parse_enum(RecipientType, recipient_type, "recipient_type")
        return self.resolver.resolve(client_id, project_id, recipient_type, skip_cache=skip_cache)

    def clear_recipient_cache(self, client_id: Optional[str] = None) -> int:
        return self.resolver.clear_cache(client_id)

    # ── Notifications ────────────────────────────────────────────────

    async def notify_activity_created(
        self, activity: Union[Activity, dict]
    ) -> Union[NotificationDeliveryResult, TransferNotificationResult]:
        """Notify the project audience of an activity.

        Transfers also notify the source project and return a
        TransferNotificationResult covering both deliveries.
        """
        if isinstance(activity, dict):
            activity = parse_activity(activity)
        if isinstance(activity, TransferActivity):
            return await self.notify_transfer(activity)

        notification = build_notification(activity)
        return await self._notify(activity, activity.project_id, notification)

    async def notify_transfer(
        self, activity: Union[TransferActivity, dict]
    ) -> TransferNotificationResult:
        """Notify the destination project, then the source project."""
        if isinstance(activity, dict):
            activity = parse_activity(activity)
        if not isinstance(activity, TransferActivity):
            raise InvalidRequestError("Activity is not a material transfer", field="activityKind")

        primary = await self._notify(activity, activity.project_id, build_notification(activity))

        secondary = None
        outbound = build_transfer_out_notification(activity)
        if outbound is not None:
            secondary = await self._notify(activity, activity.from_project.id, outbound)

        result = TransferNotificationResult(primary=primary, secondary=secondary)
        if not result.success:
            logger.warning("Transfer notification %s partially failed", activity.activity_id)
        return result

    async def _notify(
        self,
        activity: Activity,
        project_id: Optional[str],
        notification: ActivityNotification,
    ) -> NotificationDeliveryResult:
        notification_id = _new_id()
        with OperationContext(client_id=activity.client_id, notification_id=notification_id):
            resolution = self.resolver.resolve(
                activity.client_id, project_id, notification.recipient_type
            )
            for error in resolution.errors:
                logger.info("Recipient resolution: %s", error)

            return await self.sender.deliver(
                resolution.recipients,
                NotificationPayload(
                    title=notification.title,
                    body=notification.body,
                    data=notification.data,
                    priority=self.config.default_priority,
                    sound=self.config.default_sound,
                ),
                performing_user_id=activity.user.user_id,
                notification_id=notification_id,
            )

    async def send_to_users(
        self,
        user_ids: Iterable[str],
        title: str,
        body: str,
        data: Optional[dict] = None,
        performing_user_id: Optional[str] = None,
    ) -> NotificationDeliveryResult:
        """Send a direct notification to specific users' healthy tokens."""
        if not title or not body:
            raise InvalidRequestError("title and body are required", field="title")

        tokens_by_user: dict[str, list[str]] = {}
        for record in self.store.find_healthy_for_users(
            user_ids, min_score=self.config.health_score_cutoff
        ):
            tokens_by_user.setdefault(record.user_id, []).append(record.token)

        recipients = [
            Recipient(user_id=user_id, user_type=UserType.STAFF, tokens=tuple(tokens))
            for user_id, tokens in tokens_by_user.items()
        ]
        payload = NotificationPayload(
            title=title,
            body=body,
            data=dict(data or {}),
            priority=self.config.default_priority,
            sound=self.config.default_sound,
        )
        return await self.sender.deliver(recipients, payload, performing_user_id=performing_user_id)

    # ── Maintenance ──────────────────────────────────────────────────

    def run_maintenance_job(
        self,
        job: Union[MaintenanceJobType, MaintenanceOptions, str] = MaintenanceJobType.FULL,
        force: bool = False,
        max_age_in_days: Optional[int] = None,
    ) -> Optional[MaintenanceJobResult]:
        """Run maintenance if due (or forced). None when skipped.

        Raises:
            MaintenanceAlreadyRunningError: Another job is running.
        """
        if isinstance(job, MaintenanceOptions):
            if not force and not self.scheduler.should_run():
                return None
            return self.scheduler.run_maintenance_job(job)
        job_type = _parse_enum(MaintenanceJobType, job, "job_type")
        return self.scheduler.run_if_due(job_type, force=force, max_age_in_days=max_age_in_days)

    def get_maintenance_status(self) -> MaintenanceStatus:
        return self.scheduler.get_maintenance_status()

    def get_token_statistics(self) -> dict:
        return self.scheduler.analytics.statistics()

    # ── Observability ────────────────────────────────────────────────

    def get_metrics(self) -> MetricsSnapshot:
        return self.metrics.snapshot()

    def reset_metrics(self) -> None:
        self.metrics.reset()

    async def health_check(self) -> dict:
        """Component health for the HTTP health route."""
        components = {}

        try:
            components["token_store"] = f"ok ({self.store.count(active_only=True)} active tokens)"
        except Exception as e:
            logger.exception("Token store health check failed")
            components["token_store"] = f"error: {e}"

        components["gateway"] = f"ok ({type(self.gateway).__name__})"
        components["recipient_cache"] = f"ok ({len(self.resolver.cache)} entries)"
        components["maintenance"] = self.scheduler.state.value

        overall = "ok" if all(
            not str(v).startswith("error") for v in components.values()
        ) else "degraded"
        return {"status": overall, "components": components}

    async def close(self) -> None:
        await self.gateway.close()
