"""Runtime delivery metrics."""

import threading
import time
from dataclasses import dataclass
from typing import Callable

from src.notifications.models import NotificationDeliveryResult


@dataclass
class MetricsSnapshot:
    """Point-in-time copy of the delivery counters."""

    notifications_sent: int = 0
    notifications_failed: int = 0
    deliveries: int = 0
    tokens_registered: int = 0
    tokens_deactivated: int = 0
    average_delivery_time_ms: float = 0.0
    uptime_seconds: float = 0.0

    @property
    def success_rate(self) -> float:
        total = self.notifications_sent + self.notifications_failed
        return self.notifications_sent / total * 100 if total else 0.0

    @property
    def error_rate(self) -> float:
        total = self.notifications_sent + self.notifications_failed
        return self.notifications_failed / total * 100 if total else 0.0

    @property
    def notifications_per_hour(self) -> float:
        hours = self.uptime_seconds / 3600
        return self.notifications_sent / hours if hours > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "notifications_sent": self.notifications_sent,
            "notifications_failed": self.notifications_failed,
            "deliveries": self.deliveries,
            "tokens_registered": self.tokens_registered,
            "tokens_deactivated": self.tokens_deactivated,
            "average_delivery_time_ms": round(self.average_delivery_time_ms, 2),
            "success_rate": round(self.success_rate, 2),
            "error_rate": round(self.error_rate, 2),
            "notifications_per_hour": round(self.notifications_per_hour, 2),
            "uptime_seconds": round(self.uptime_seconds, 1),
        }


class DeliveryMetrics:
    """Thread-safe counters fed by delivery results and token lifecycle events."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._reset_locked()

    def _reset_locked(self) -> None:
        self._started = self._clock()
        self._sent = 0
        self._failed = 0
        self._deliveries = 0
        self._registered = 0
        self._deactivated = 0
        self._total_time_ms = 0.0

    def record_delivery(self, result: NotificationDeliveryResult) -> None:
        with self._lock:
            self._deliveries += 1
            self._sent += result.delivered_count
            self._failed += result.failed_count
            self._total_time_ms += result.processing_time_ms

    def record_registration(self) -> None:
        with self._lock:
            self._registered += 1

    def record_deactivation(self, count: int = 1) -> None:
        with self._lock:
            self._deactivated += count

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                notifications_sent=self._sent,
                notifications_failed=self._failed,
                deliveries=self._deliveries,
                tokens_registered=self._registered,
                tokens_deactivated=self._deactivated,
                average_delivery_time_ms=(
                    self._total_time_ms / self._deliveries if self._deliveries else 0.0
                ),
                uptime_seconds=self._clock() - self._started,
            )

    def reset(self) -> None:
        with self._lock:
            self._reset_locked()
