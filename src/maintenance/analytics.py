"""Read-only token usage and health analytics."""

from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from src.notifications.config import SCORE_BUCKETS
from src.notifications.token_store import BaseTokenStore

# (label, min_days inclusive, max_days exclusive)
AGE_BUCKETS: tuple[tuple[str, float, float], ...] = (
    ("0-7 days", 0, 7),
    ("8-30 days", 7, 30),
    ("31-90 days", 30, 90),
    ("91-365 days", 90, 365),
    ("365+ days", 365, float("inf")),
)


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def score_bucket(score: int) -> str:
    for label, low, high in SCORE_BUCKETS:
        if low <= score <= high:
            return label
    return SCORE_BUCKETS[-1][0] if score > 100 else SCORE_BUCKETS[0][0]


def age_bucket(age_days: float) -> str:
    for label, low, high in AGE_BUCKETS:
        if low <= age_days < high:
            return label
    return AGE_BUCKETS[0][0]


class TokenAnalytics:
    """Aggregates statistics over the token store. Never mutates tokens."""

    def __init__(
        self,
        store: BaseTokenStore,
        max_token_age_days: int = 30,
        unhealthy_failure_threshold: int = 3,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.max_token_age_days = max_token_age_days
        self.unhealthy_failure_threshold = unhealthy_failure_threshold
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def statistics(self) -> dict:
        """Overview, health and distribution over the stored tokens.

        Distributions cover active tokens only.
        """
        now = self._clock()
        tokens = self.store.list_all()
        active = [t for t in tokens if t.is_active]

        scores = [t.health.validation_score for t in active]
        by_score = {label: 0 for label, _, _ in SCORE_BUCKETS}
        for score in scores:
            by_score[score_bucket(score)] += 1

        healthy = sum(1 for t in active if t.health.is_healthy)
        needing_cleanup = len(
            self.store.find_stale_or_unhealthy(
                self.max_token_age_days, self.unhealthy_failure_threshold, now=now
            )
        )

        return {
            "overview": {
                "total_tokens": len(tokens),
                "active_tokens": len(active),
                "inactive_tokens": len(tokens) - len(active),
                "average_validation_score": round(sum(scores) / len(scores)) if scores else 0,
            },
            "by_platform": dict(Counter(t.platform.value for t in active)),
            "by_user_type": dict(Counter(t.user_type.value for t in active)),
            "by_validation_score": by_score,
            "health_metrics": {
                "healthy_tokens": healthy,
                "unhealthy_tokens": len(active) - healthy,
                "tokens_needing_cleanup": needing_cleanup,
            },
            "generated_at": now.isoformat(),
        }

    def usage_analytics(self, last_maintenance_run: Optional[datetime] = None) -> dict:
        """Statistics plus usage windows, age distribution and 30-day trends."""
        now = self._clock()
        stats = self.statistics()
        tokens = self.store.list_all()

        day_ago = now - timedelta(days=1)
        week_ago = now - timedelta(days=7)
        month_ago = now - timedelta(days=30)

        def used_since(since: datetime, active_only: bool) -> int:
            return sum(
                1 for t in tokens
                if _utc(t.last_used) >= since and (t.is_active or not active_only)
            )

        by_age = {label: 0 for label, _, _ in AGE_BUCKETS}
        registrations: Counter = Counter()
        usage: dict[str, list[int]] = {}
        for t in tokens:
            created = _utc(t.created_at)
            last_used = _utc(t.last_used)
            by_age[age_bucket((now - created).total_seconds() / 86400)] += 1
            if created >= month_ago:
                registrations[created.date().isoformat()] += 1
            if last_used >= month_ago:
                day = usage.setdefault(last_used.date().isoformat(), [0, 0])
                day[0] += 1 if t.is_active else 0
                day[1] += 1

        return {
            "overview": {
                **stats["overview"],
                "last_maintenance_run": last_maintenance_run.isoformat() if last_maintenance_run else None,
            },
            "usage": {
                "daily_active_tokens": used_since(day_ago, True),
                "weekly_active_tokens": used_since(week_ago, True),
                "monthly_active_tokens": used_since(month_ago, True),
                "tokens_used_today": used_since(day_ago, False),
                "tokens_used_this_week": used_since(week_ago, False),
                "tokens_used_this_month": used_since(month_ago, False),
            },
            "health": {
                **stats["health_metrics"],
                "expired_tokens": sum(1 for t in tokens if _utc(t.last_used) < month_ago),
            },
            "distribution": {
                "by_platform": stats["by_platform"],
                "by_user_type": stats["by_user_type"],
                "by_validation_score": stats["by_validation_score"],
                "by_age": by_age,
            },
            "trends": {
                "registration_trend": [
                    {"date": date, "count": count}
                    for date, count in sorted(registrations.items())
                ],
                "usage_trend": [
                    {"date": date, "active_count": counts[0], "usage_count": counts[1]}
                    for date, counts in sorted(usage.items())
                ],
            },
        }

