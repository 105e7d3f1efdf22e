"""Push notification delivery engine."""

import asyncio
import logging
import time
from typing import Iterable, Optional

from src.notifications.config import DEFAULT_NOTIFICATION_CONFIG, NotificationConfig
from src.notifications.errors import DeliveryError, GatewayTimeoutError
from src.notifications.gateway import BasePushGateway
from src.notifications.metrics import DeliveryMetrics
from src.notifications.models import (
    NotificationDeliveryResult,
    NotificationPayload,
    PushMessage,
    PushTicket,
    Recipient,
    _new_id,
    mask_token,
)
from src.notifications.recipients import RecipientCache
from src.notifications.token_store import BaseTokenStore
from src.notifications.validation import TokenValidator
from src.logging_config.context import OperationContext

logger = logging.getLogger(__name__)


def chunked(items: list, size: int) -> list[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class NotificationSender:
    """Filters, chunks and submits notifications, feeding outcomes back to the store.

    Every token of every recipient is one delivery target. Tokens the
    store has deactivated since resolution are dropped, and targets with
    malformed tokens are counted failed without reaching the gateway.
    Chunks go out sequentially; a chunk that fails as a whole fails only
    its own messages.
    """

    def __init__(
        self,
        store: BaseTokenStore,
        gateway: BasePushGateway,
        validator: Optional[TokenValidator] = None,
        config: Optional[NotificationConfig] = None,
        metrics: Optional[DeliveryMetrics] = None,
        cache: Optional[RecipientCache] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.validator = validator or TokenValidator()
        self.config = config or DEFAULT_NOTIFICATION_CONFIG
        self.metrics = metrics
        self.cache = cache

    @property
    def chunk_size(self) -> int:
        return max(1, min(self.config.max_chunk_size, self.gateway.max_chunk_size))

    async def deliver(
        self,
        recipients: Iterable[Recipient],
        payload: NotificationPayload,
        performing_user_id: Optional[str] = None,
        notification_id: Optional[str] = None,
    ) -> NotificationDeliveryResult:
        notification_id = notification_id or _new_id()
        with OperationContext(notification_id=notification_id):
            result = await self._deliver(recipients, payload, performing_user_id, notification_id)
        if self.metrics is not None:
            self.metrics.record_delivery(result)
        return result

    async def _deliver(
        self,
        recipients: Iterable[Recipient],
        payload: NotificationPayload,
        performing_user_id: Optional[str],
        notification_id: str,
    ) -> NotificationDeliveryResult:
        start = time.perf_counter()

        targets = [
            (recipient, token)
            for recipient in recipients
            if not (performing_user_id and recipient.user_id == performing_user_id)
            for token in recipient.tokens
        ]

        delivered = 0
        failed = 0
        errors: list[str] = []
        messages: list[PushMessage] = []

        if targets:
            try:
                inactive = await self._find_inactive([token for _, token in targets])
            except Exception as e:
                reason = str(e) or type(e).__name__
                logger.warning("Active-token check failed, sending to every target: %s", reason)
                errors.append(f"Active-token check failed: {reason}")
            else:
                if inactive:
                    logger.info("Skipping %d deactivated push tokens", len(inactive))
                    targets = [(r, t) for r, t in targets if t not in inactive]

        for recipient, token in targets:
            validation = self.validator.validate(token)
            if not validation.is_valid:
                failed += 1
                errors.append(
                    f"Invalid push token for user {recipient.user_id}: {', '.join(validation.errors)}"
                )
                continue
            messages.append(PushMessage(
                to=token,
                title=payload.title,
                body=payload.body,
                data={**payload.data, "userId": recipient.user_id, "notificationId": notification_id},
                priority=payload.priority,
                sound=payload.sound,
                ttl=self.config.message_ttl_seconds,
                user_id=recipient.user_id,
            ))

        chunks = chunked(messages, self.chunk_size)
        chunks_sent = 0
        chunks_failed = 0

        for index, chunk in enumerate(chunks, start=1):
            logger.debug("Sending chunk %d/%d with %d messages", index, len(chunks), len(chunk))
            try:
                tickets = await self._send_chunk(chunk)
            except DeliveryError as e:
                chunks_failed += 1
                failed += len(chunk)
                logger.error("Chunk %d/%d failed: %s", index, len(chunks), e.message)
                for message in chunk:
                    error = f"Chunk {index} failed for user {message.user_id}: {e.message}"
                    errors.append(error)
                    self._record_failure(message.to, e.message)
            else:
                chunks_sent += 1
                for message, ticket in zip(chunk, tickets):
                    if ticket.ok:
                        delivered += 1
                        self._record_success(message.to)
                    else:
                        failed += 1
                        errors.append(
                            f"Token {mask_token(message.to)} (user {message.user_id}): {ticket.message}"
                        )
                        self._record_failure(message.to, ticket.message or "Unknown error")

            if index < len(chunks) and self.config.chunk_delay_seconds > 0:
                await asyncio.sleep(self.config.chunk_delay_seconds)

        result = NotificationDeliveryResult(
            notification_id=notification_id,
            recipient_count=len(targets),
            delivered_count=delivered,
            failed_count=failed,
            errors=tuple(errors),
            processing_time_ms=(time.perf_counter() - start) * 1000,
            chunks_sent=chunks_sent,
            chunks_failed=chunks_failed,
        )
        logger.info(
            "Delivery %s: %d targets, %d delivered, %d failed (%d chunks, %d failed)",
            notification_id,
            result.recipient_count,
            delivered,
            failed,
            len(chunks),
            chunks_failed,
        )
        return result

    async def _find_inactive(self, tokens: list[str]) -> set[str]:
        """One store round trip, off the event loop and under the store timeout."""
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(None, self.store.find_inactive, tokens),
            timeout=self.config.store_timeout_seconds,
        )

    async def _send_chunk(self, chunk: list[PushMessage]) -> list[PushTicket]:
        """Submit one chunk under the send timeout.

        Any transport problem is normalised to DeliveryError.
        """
        timeout = self.config.send_timeout_seconds
        try:
            tickets = await asyncio.wait_for(self.gateway.send_chunk(chunk), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise GatewayTimeoutError(f"Push gateway timed out after {timeout}s") from e
        except DeliveryError:
            raise
        except Exception as e:
            raise DeliveryError(f"{type(e).__name__}: {e}") from e

        if not isinstance(tickets, list) or len(tickets) != len(chunk):
            count = len(tickets) if isinstance(tickets, list) else "no"
            raise DeliveryError(f"Gateway returned {count} tickets for {len(chunk)} messages")
        return tickets

    def _record_success(self, token: str) -> None:
        try:
            self.store.record_use(token)
            self.store.record_success(token)
        except Exception:
            logger.exception("Failed to record delivery success for %s", mask_token(token))

    def _record_failure(self, token: str, error: str) -> None:
        try:
            decision = self.store.record_failure(token, error)
        except Exception:
            logger.exception("Failed to record delivery failure for %s", mask_token(token))
            return
        # the threshold is crossed exactly once per run of failures
        if decision is None or decision.failure_count != self.store.failure_threshold:
            return
        if self.metrics is not None:
            self.metrics.record_deactivation()
        if self.cache is not None:
            self.cache.invalidate_tokens([token])
