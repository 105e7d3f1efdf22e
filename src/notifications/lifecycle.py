"""Token lifecycle policy.

Pure decisions shared by both token store backends and the maintenance
job: when repeated failures deactivate a token, whether a score counts
as healthy, and what cleanup should do with a stored record.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from src.notifications.models import PushToken, TokenValidationResult

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_HEALTH_CUTOFF = 50
FAILURE_REASON_TEMPLATE = "Too many delivery failures: {count}"


class CleanupAction(Enum):
    """What maintenance cleanup does with one stored token."""
    DELETE = "delete"
    DEACTIVATE_EXPIRED = "deactivate_expired"
    DEACTIVATE_INVALID = "deactivate_invalid"
    DEACTIVATE_UNHEALTHY = "deactivate_unhealthy"
    KEEP = "keep"

    @property
    def deactivates(self) -> bool:
        return self.name.startswith("DEACTIVATE")


CLEANUP_REASONS = {
    CleanupAction.DEACTIVATE_EXPIRED: "Token expired due to inactivity",
    CleanupAction.DEACTIVATE_INVALID: "Token failed validation",
    CleanupAction.DEACTIVATE_UNHEALTHY: "Token marked unhealthy",
}


@dataclass(frozen=True)
class FailureDecision:
    """Result of recording one delivery failure."""

    failure_count: int
    should_deactivate: bool
    reason: Optional[str] = None


def decide_on_failure(
    failure_count_after_increment: int,
    threshold: int = DEFAULT_FAILURE_THRESHOLD,
) -> FailureDecision:
    """Decide whether a token's failure count has crossed the threshold."""
    if failure_count_after_increment >= threshold:
        return FailureDecision(
            failure_count=failure_count_after_increment,
            should_deactivate=True,
            reason=FAILURE_REASON_TEMPLATE.format(count=failure_count_after_increment),
        )
    return FailureDecision(failure_count=failure_count_after_increment, should_deactivate=False)


def assess_health(
    validation: TokenValidationResult,
    score: int,
    cutoff: int = DEFAULT_HEALTH_CUTOFF,
) -> bool:
    return validation.is_valid and score >= cutoff


def clamp_score(score: int) -> int:
    return max(0, min(100, int(score)))


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def plan_cleanup(
    record: PushToken,
    validation: TokenValidationResult,
    now: Optional[datetime] = None,
    max_age_days: int = 30,
    hard_delete_age_days: int = 90,
) -> CleanupAction:
    """Choose the cleanup action for a stored token.

    Inactive tokens are deleted once untouched for ``hard_delete_age_days``
    and otherwise left alone. Active tokens unused for ``max_age_days`` are
    expired first; the rest are deactivated if invalid or unhealthy.
    """
    now = now or datetime.now(timezone.utc)

    if not record.is_active:
        if _as_utc(record.updated_at) < now - timedelta(days=hard_delete_age_days):
            return CleanupAction.DELETE
        return CleanupAction.KEEP

    if _as_utc(record.last_used) < now - timedelta(days=max_age_days):
        return CleanupAction.DEACTIVATE_EXPIRED

    if not validation.is_valid:
        return CleanupAction.DEACTIVATE_INVALID

    if not record.health.is_healthy:
        return CleanupAction.DEACTIVATE_UNHEALTHY

    return CleanupAction.KEEP
