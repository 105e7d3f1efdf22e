"""Push token store.

``BaseTokenStore`` is the contract both backends honour. The in-memory
store keeps records in a dict guarded by a reentrant lock and hands out
copies, so callers never hold a reference to stored state.
"""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from src.notifications.errors import StoreTimeoutError
from src.notifications.lifecycle import (
    DEFAULT_FAILURE_THRESHOLD,
    FailureDecision,
    clamp_score,
    decide_on_failure,
)
from src.notifications.models import PushToken, ValidationErrorEntry, mask_token

logger = logging.getLogger(__name__)

SAME_DEVICE_REASON = "Replaced by newer token on same device"

_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="token-store")


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def call_with_timeout(func, timeout: Optional[float], *args, **kwargs):
    """Run a blocking store call, giving up after ``timeout`` seconds.

    The worker thread is not interrupted; a late result is discarded.
    A missing or non-positive timeout calls ``func`` directly.
    """
    if not timeout or timeout <= 0:
        return func(*args, **kwargs)
    future = _executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeoutError as e:
        name = getattr(func, "__name__", "call")
        raise StoreTimeoutError(f"Token store {name} timed out after {timeout}s") from e


class BaseTokenStore(ABC):
    """Queryable store of push token records, keyed by token value."""

    def __init__(self, failure_threshold: int = DEFAULT_FAILURE_THRESHOLD) -> None:
        self.failure_threshold = failure_threshold

    @abstractmethod
    def register(self, record: PushToken) -> tuple[PushToken, bool]:
        """Upsert by token value. Returns the stored record and whether it is new."""

    @abstractmethod
    def get(self, token: str) -> Optional[PushToken]:
        ...

    @abstractmethod
    def find_by_user(self, user_id: str, active_only: bool = True) -> list[PushToken]:
        ...

    @abstractmethod
    def list_all(self) -> list[PushToken]:
        ...

    def list_active(self) -> list[PushToken]:
        return [t for t in self.list_all() if t.is_active]

    def count(self, active_only: bool = False) -> int:
        return len(self.list_active() if active_only else self.list_all())

    def find_inactive(self, tokens: Iterable[str]) -> set[str]:
        """The subset of ``tokens`` that are stored and deactivated.

        Unknown tokens are not included.
        """
        inactive = set()
        for token in dict.fromkeys(tokens):
            record = self.get(token)
            if record is not None and not record.is_active:
                inactive.add(token)
        return inactive

    @abstractmethod
    def record_use(self, token: str) -> bool:
        """Stamp ``last_used``; called for every message the gateway accepted."""

    @abstractmethod
    def record_success(self, token: str) -> bool:
        """Note a successful delivery; resets the consecutive failure count."""

    @abstractmethod
    def record_failure(self, token: str, error_msg: str) -> Optional[FailureDecision]:
        """Note a delivery failure, deactivating the token past the threshold.

        Returns None for an unknown token.
        """

    @abstractmethod
    def deactivate(self, token: str, reason: str) -> bool:
        """Deactivate a token. Idempotent; False only for an unknown token."""

    @abstractmethod
    def update_health(
        self,
        token: str,
        score: int,
        is_healthy: bool,
        checked_at: Optional[datetime] = None,
    ) -> bool:
        ...

    @abstractmethod
    def delete(self, token: str) -> bool:
        ...

    def find_healthy_for_users(
        self, user_ids: Iterable[str], min_score: int = 50
    ) -> list[PushToken]:
        """Active, healthy tokens scoring at least ``min_score``, in user order."""
        results: list[PushToken] = []
        for user_id in dict.fromkeys(user_ids):
            for record in self.find_by_user(user_id, active_only=True):
                if record.health.is_healthy and record.health.validation_score >= min_score:
                    results.append(record)
        return results

    def find_stale_or_unhealthy(
        self,
        max_age_days: int,
        unhealthy_failure_threshold: int = 3,
        now: Optional[datetime] = None,
    ) -> list[PushToken]:
        """Cleanup candidates.

        Inactive and untouched past the cutoff, unused past the cutoff, or
        active but unhealthy with repeated failures.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=max_age_days)
        candidates = []
        for record in self.list_all():
            if not record.is_active and _utc(record.updated_at) < cutoff:
                candidates.append(record)
            elif _utc(record.last_used) < cutoff:
                candidates.append(record)
            elif (
                not record.health.is_healthy
                and record.health.failure_count >= unhealthy_failure_threshold
            ):
                candidates.append(record)
        return candidates


class InMemoryTokenStore(BaseTokenStore):
    """Thread-safe in-memory token store.

    Example:
        store = InMemoryTokenStore()
        stored, is_new = store.register(PushToken(user_id="u1", token=..., platform=Platform.IOS))
        decision = store.record_failure(stored.token, "DeviceNotRegistered")
    """

    def __init__(self, failure_threshold: int = DEFAULT_FAILURE_THRESHOLD) -> None:
        super().__init__(failure_threshold)
        self._lock = threading.RLock()
        self._tokens: dict[str, PushToken] = {}

    def register(self, record: PushToken) -> tuple[PushToken, bool]:
        now = datetime.now(timezone.utc)
        with self._lock:
            existing = self._tokens.get(record.token)
            if existing is not None:
                existing.user_id = record.user_id
                existing.user_type = record.user_type
                existing.platform = record.platform
                existing.device_id = record.device_id
                existing.device_name = record.device_name
                existing.app_version = record.app_version
                existing.token_format = record.token_format
                existing.token_metadata = record.token_metadata
                existing.is_active = True
                existing.deactivation_reason = None
                existing.deactivated_at = None
                existing.last_used = now
                existing.updated_at = now
                logger.debug("Refreshed push token %s for user %s", mask_token(record.token), record.user_id)
                return copy.deepcopy(existing), False

            stored = copy.deepcopy(record)
            self._tokens[stored.token] = stored

            if stored.device_id:
                for other in self._tokens.values():
                    if (
                        other.token != stored.token
                        and other.user_id == stored.user_id
                        and other.device_id == stored.device_id
                        and other.is_active
                    ):
                        self._deactivate_locked(other, SAME_DEVICE_REASON, now)

        logger.info("Registered push token %s for user %s", mask_token(record.token), record.user_id)
        return copy.deepcopy(stored), True

    def get(self, token: str) -> Optional[PushToken]:
        with self._lock:
            record = self._tokens.get(token)
            return copy.deepcopy(record) if record else None

    def find_by_user(self, user_id: str, active_only: bool = True) -> list[PushToken]:
        with self._lock:
            records = [
                t for t in self._tokens.values()
                if t.user_id == user_id and (t.is_active or not active_only)
            ]
            records.sort(key=lambda t: t.created_at)
            return copy.deepcopy(records)

    def list_all(self) -> list[PushToken]:
        with self._lock:
            return copy.deepcopy(list(self._tokens.values()))

    def find_inactive(self, tokens: Iterable[str]) -> set[str]:
        with self._lock:
            return {
                t for t in tokens
                if t in self._tokens and not self._tokens[t].is_active
            }

    def record_use(self, token: str) -> bool:
        with self._lock:
            record = self._tokens.get(token)
            if record is None:
                return False
            record.last_used = record.updated_at = datetime.now(timezone.utc)
            return True

    def record_success(self, token: str) -> bool:
        now = datetime.now(timezone.utc)
        with self._lock:
            record = self._tokens.get(token)
            if record is None:
                return False
            record.updated_at = now
            record.health.success_count += 1
            record.health.last_success = now
            record.health.failure_count = 0
            record.health.is_healthy = True
            return True

    def record_failure(self, token: str, error_msg: str) -> Optional[FailureDecision]:
        now = datetime.now(timezone.utc)
        with self._lock:
            record = self._tokens.get(token)
            if record is None:
                return None
            record.validation_errors.append(ValidationErrorEntry(error=error_msg, timestamp=now))
            record.health.failure_count += 1
            record.health.last_failure = now
            record.updated_at = now
            decision = decide_on_failure(record.health.failure_count, self.failure_threshold)
            deactivated_now = decision.should_deactivate and record.is_active
            if deactivated_now:
                record.health.is_healthy = False
                self._deactivate_locked(record, decision.reason, now)

        if deactivated_now:
            logger.warning("Deactivated push token %s: %s", mask_token(token), decision.reason)
        return decision

    def deactivate(self, token: str, reason: str) -> bool:
        with self._lock:
            record = self._tokens.get(token)
            if record is None:
                return False
            if record.is_active:
                self._deactivate_locked(record, reason, datetime.now(timezone.utc))
            return True

    def update_health(
        self,
        token: str,
        score: int,
        is_healthy: bool,
        checked_at: Optional[datetime] = None,
    ) -> bool:
        with self._lock:
            record = self._tokens.get(token)
            if record is None:
                return False
            record.health.validation_score = clamp_score(score)
            record.health.is_healthy = is_healthy
            record.health.last_health_check = checked_at or datetime.now(timezone.utc)
            return True

    def delete(self, token: str) -> bool:
        with self._lock:
            return self._tokens.pop(token, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._tokens.clear()

    def _deactivate_locked(self, record: PushToken, reason: str, now: datetime) -> None:
        record.is_active = False
        record.deactivation_reason = reason
        record.deactivated_at = now
        record.updated_at = now
        record.validation_errors.append(ValidationErrorEntry(error=reason, timestamp=now))
