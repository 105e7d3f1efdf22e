"""Push token maintenance scheduler.

Runs cleanup, health refresh and analytics over the token store. At most
one job runs at a time: the scheduler state moves IDLE -> RUNNING ->
COMPLETED_* under a lock, and a trigger that finds RUNNING fails at once
with MaintenanceAlreadyRunningError instead of waiting.
"""

import dataclasses
import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from src.maintenance.alerts import check_job_alerts, check_system_alerts
from src.maintenance.analytics import TokenAnalytics, score_bucket
from src.maintenance.config import (
    DEFAULT_MAINTENANCE_CONFIG,
    AlertThresholds,
    MaintenanceConfig,
    MaintenanceJobType,
    MaintenanceOptions,
    MaintenanceState,
)
from src.maintenance.models import (
    CleanupResult,
    HealthRefreshResult,
    JobSummary,
    MaintenanceJobResult,
    OperationResult,
)
from src.notifications.config import SCORE_BUCKETS
from src.notifications.errors import (
    InvalidRequestError,
    MaintenanceAlreadyRunningError,
    MaintenanceError,
)
from src.notifications.lifecycle import (
    CLEANUP_REASONS,
    CleanupAction,
    assess_health,
    plan_cleanup,
)
from src.notifications.models import mask_token
from src.notifications.recipients import RecipientCache
from src.notifications.token_store import BaseTokenStore
from src.notifications.validation import TokenValidator
from src.logging_config.context import OperationContext

logger = logging.getLogger(__name__)

RECENT_JOBS_IN_STATUS = 5
HEALTHY_SUCCESS_RATE = 80.0
HEALTHY_AVERAGE_DURATION_MS = 5 * 60 * 1000


@dataclass(frozen=True)
class MaintenanceStatus:
    is_running: bool
    state: MaintenanceState
    last_run: Optional[datetime]
    next_scheduled_run: Optional[datetime]
    should_run: bool
    config: dict
    recent_jobs: tuple[MaintenanceJobResult, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "is_running": self.is_running,
            "state": self.state.value,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_scheduled_run": (
                self.next_scheduled_run.isoformat() if self.next_scheduled_run else None
            ),
            "should_run": self.should_run,
            "config": self.config,
            "recent_jobs": [job.to_dict() for job in self.recent_jobs],
        }


class MaintenanceScheduler:
    """Mutually exclusive maintenance over a token store.

    Args:
        store: Token store to maintain.
        validator: Validator used to re-check and re-score tokens.
        config: Schedule, policy and alert configuration.
        clock: Returns the current UTC time; injectable for tests.
        recipient_cache: Cache to purge of tokens a job deactivates or deletes.

    Example:
        scheduler = MaintenanceScheduler(store)
        if scheduler.should_run():
            job = scheduler.run_maintenance_job()
    """

    def __init__(
        self,
        store: BaseTokenStore,
        validator: Optional[TokenValidator] = None,
        config: Optional[MaintenanceConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        recipient_cache: Optional[RecipientCache] = None,
    ):
        self.store = store
        self.recipient_cache = recipient_cache
        self.validator = validator or TokenValidator()
        self.config = config or dataclasses.replace(DEFAULT_MAINTENANCE_CONFIG)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.analytics = TokenAnalytics(
            store,
            max_token_age_days=self.config.max_token_age_days,
            unhealthy_failure_threshold=self.config.unhealthy_failure_threshold,
            clock=self._clock,
        )

        self._lock = threading.Lock()
        self._state = MaintenanceState.IDLE
        self._running_job_id: Optional[str] = None
        self._last_run: Optional[datetime] = None
        self._history: deque[MaintenanceJobResult] = deque(maxlen=self.config.history_size)

    # ── State ────────────────────────────────────────────────────────

    @property
    def state(self) -> MaintenanceState:
        with self._lock:
            return self._state

    @property
    def is_running(self) -> bool:
        return self.state == MaintenanceState.RUNNING

    @property
    def last_run(self) -> Optional[datetime]:
        with self._lock:
            return self._last_run

    def _start(self, job_id: str) -> None:
        with self._lock:
            if self._state == MaintenanceState.RUNNING:
                raise MaintenanceAlreadyRunningError(self._running_job_id)
            self._state = MaintenanceState.RUNNING
            self._running_job_id = job_id

    def _complete(self, result: MaintenanceJobResult) -> None:
        with self._lock:
            self._state = result.state
            self._running_job_id = None
            self._last_run = result.end_time
            self._history.appendleft(result)

    def should_run(self, force: bool = False) -> bool:
        """Whether a scheduled trigger should start a job now.

        Never while a job is running. ``force`` overrides the schedule and
        the enabled flag.
        """
        with self._lock:
            if self._state == MaintenanceState.RUNNING:
                return False
            if force:
                return True
            if not self.config.enabled:
                return False
            if self._last_run is None:
                return True
            interval = timedelta(hours=self.config.interval_hours)
            return self._clock() - self._last_run >= interval

    # ── Jobs ─────────────────────────────────────────────────────────

    def run_if_due(
        self,
        job_type: MaintenanceJobType = MaintenanceJobType.FULL,
        force: bool = False,
        max_age_in_days: Optional[int] = None,
    ) -> Optional[MaintenanceJobResult]:
        """Run a preset job if the schedule allows it. None when skipped.

        A forced run bypasses the schedule but still fails fast with
        MaintenanceAlreadyRunningError while another job is running.
        """
        if not force and not self.should_run():
            logger.info("Maintenance not due (job_type=%s), skipping", job_type.value)
            return None
        return self.run_maintenance_job(job_type.options(max_age_in_days))

    def run_maintenance_job(self, options: Optional[MaintenanceOptions] = None) -> MaintenanceJobResult:
        """Run one maintenance job.

        Each phase is isolated: a phase that raises records its error and
        the remaining phases still run.

        Raises:
            MaintenanceAlreadyRunningError: Another job is running.
        """
        options = options or MaintenanceOptions()
        job_id = f"maintenance_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"
        self._start(job_id)

        with OperationContext(job_id=job_id):
            start = self._clock()
            logger.info("Starting maintenance job %s", job_id)
            try:
                result = self._run_phases(job_id, start, options)
            except Exception as e:
                # Phases absorb their own errors; this guards the bookkeeping.
                logger.exception("Maintenance job %s aborted", job_id)
                end = self._clock()
                result = MaintenanceJobResult(
                    job_id=job_id,
                    start_time=start,
                    end_time=end,
                    duration_ms=(end - start).total_seconds() * 1000,
                    state=MaintenanceState.COMPLETED_WITH_ERRORS,
                    summary=JobSummary(errors=(f"Maintenance job failed: {e}",)),
                )
            self._complete(result)
            logger.info(
                "Maintenance job %s completed in %.0fms (success=%s)",
                job_id,
                result.duration_ms,
                result.success,
            )
        return result

    def _run_phases(
        self, job_id: str, start: datetime, options: MaintenanceOptions
    ) -> MaintenanceJobResult:
        max_age = options.max_age_in_days or self.config.max_token_age_days
        errors: list[str] = []
        processed = deactivated = deleted = healthy = unhealthy = 0
        cleanup_op = health_op = analytics_op = OperationResult()

        if options.include_cleanup:
            try:
                cleanup = self.cleanup(max_age)
                cleanup_op = OperationResult(executed=True, result=cleanup.to_dict())
                processed += cleanup.total_processed
                deactivated += cleanup.tokens_deactivated
                deleted += cleanup.tokens_deleted
                errors.extend(cleanup.errors)
            except Exception as e:
                logger.exception("Cleanup failed")
                cleanup_op = OperationResult(executed=True, error=f"Cleanup failed: {e}")
                errors.append(cleanup_op.error)

        if options.include_health_refresh:
            try:
                refresh = self.refresh_health()
                health_op = OperationResult(executed=True, result=refresh.to_dict())
                processed += refresh.tokens_refreshed
                deactivated += refresh.tokens_deactivated
                healthy = refresh.healthy_tokens
                unhealthy = refresh.unhealthy_tokens
                errors.extend(refresh.errors)
            except Exception as e:
                logger.exception("Health refresh failed")
                health_op = OperationResult(executed=True, error=f"Health refresh failed: {e}")
                errors.append(health_op.error)

        if options.include_analytics:
            try:
                report = self.analytics.usage_analytics(last_maintenance_run=self.last_run)
                analytics_op = OperationResult(executed=True, result=report)
            except Exception as e:
                logger.exception("Analytics update failed")
                analytics_op = OperationResult(executed=True, error=f"Analytics update failed: {e}")
                errors.append(analytics_op.error)

        end = self._clock()
        duration_ms = (end - start).total_seconds() * 1000
        summary = JobSummary(
            tokens_processed=processed,
            tokens_deactivated=deactivated,
            tokens_deleted=deleted,
            healthy_tokens=healthy,
            unhealthy_tokens=unhealthy,
            errors=tuple(errors),
        )
        with self._lock:
            previous = [job.success for job in self._history]
        alerts = check_job_alerts(
            duration_ms,
            summary,
            [not errors] + previous,
            self.config.alert_thresholds,
        )

        return MaintenanceJobResult(
            job_id=job_id,
            start_time=start,
            end_time=end,
            duration_ms=duration_ms,
            state=(
                MaintenanceState.COMPLETED_WITH_ERRORS if errors
                else MaintenanceState.COMPLETED_SUCCESS
            ),
            cleanup=cleanup_op,
            health_refresh=health_op,
            analytics=analytics_op,
            summary=summary,
            alerts=tuple(alerts),
        )

    # ── Phases ───────────────────────────────────────────────────────

    def cleanup(self, max_age_days: Optional[int] = None) -> CleanupResult:
        """Deactivate stale, invalid or unhealthy tokens; delete long-inactive ones.

        Raises:
            MaintenanceError: The candidate tokens could not be listed.
        """
        max_age_days = max_age_days or self.config.max_token_age_days
        now = self._clock()
        result = CleanupResult()

        try:
            candidates = self.store.find_stale_or_unhealthy(
                max_age_days, self.config.unhealthy_failure_threshold, now=now
            )
        except Exception as e:
            raise MaintenanceError(f"Could not list cleanup candidates: {e}") from e
        removed: list[str] = []
        result.total_processed = len(candidates)
        logger.info("Cleanup: %d candidate tokens (max age %d days)", len(candidates), max_age_days)

        for record in candidates:
            try:
                validation = self.validator.validate(record.token)
                action = plan_cleanup(
                    record,
                    validation,
                    now=now,
                    max_age_days=max_age_days,
                    hard_delete_age_days=self.config.hard_delete_age_days,
                )
                if action == CleanupAction.DELETE:
                    if self.store.delete(record.token):
                        result.tokens_deleted += 1
                        removed.append(record.token)
                elif action.deactivates:
                    reason = CLEANUP_REASONS[action]
                    if action == CleanupAction.DEACTIVATE_INVALID:
                        reason = f"Cleanup validation failed: {', '.join(validation.errors)}"
                        result.invalid_format_tokens += 1
                    elif action == CleanupAction.DEACTIVATE_EXPIRED:
                        result.expired_tokens += 1
                    else:
                        result.unhealthy_tokens += 1
                    self.store.deactivate(record.token, reason)
                    result.tokens_deactivated += 1
                    removed.append(record.token)
            except Exception as e:
                logger.warning("Cleanup failed for token %s: %s", mask_token(record.token), e)
                result.errors.append(f"Error processing token {mask_token(record.token)}: {e}")

        self._forget(removed)
        return result

    def refresh_health(self) -> HealthRefreshResult:
        """Re-score every active token and deactivate the very low scorers."""
        now = self._clock()
        result = HealthRefreshResult(by_validation_score={label: 0 for label, _, _ in SCORE_BUCKETS})
        try:
            tokens = self.store.list_active()
        except Exception as e:
            raise MaintenanceError(f"Could not list active tokens: {e}") from e
        result.total_tokens = len(tokens)
        removed: list[str] = []

        for record in tokens:
            try:
                validation = self.validator.validate(record.token)
                score = self.validator.calculate_health_score(record, validation, now=now)
                is_healthy = assess_health(validation, score, self.config.health_score_cutoff)
                self.store.update_health(record.token, score, is_healthy, now)
                result.tokens_refreshed += 1

                if is_healthy:
                    result.healthy_tokens += 1
                else:
                    result.unhealthy_tokens += 1
                    if score < self.config.low_score_deactivation:
                        self.store.deactivate(record.token, f"Low health score: {score}")
                        result.tokens_deactivated += 1
                        removed.append(record.token)

                platform = record.platform.value
                user_type = record.user_type.value
                result.by_platform[platform] = result.by_platform.get(platform, 0) + 1
                result.by_user_type[user_type] = result.by_user_type.get(user_type, 0) + 1
                result.by_validation_score[score_bucket(score)] += 1
            except Exception as e:
                logger.warning("Health refresh failed for token %s: %s", mask_token(record.token), e)
                result.errors.append(f"Error refreshing token {mask_token(record.token)}: {e}")

        self._forget(removed)
        return result

    def _forget(self, tokens: list[str]) -> None:
        if tokens and self.recipient_cache is not None:
            self.recipient_cache.invalidate_tokens(tokens)

    # ── Status & history ─────────────────────────────────────────────

    def get_history(self, limit: int = 10) -> list[MaintenanceJobResult]:
        with self._lock:
            return list(self._history)[:limit]

    def next_scheduled_run(self) -> Optional[datetime]:
        last_run = self.last_run
        if last_run is None:
            return None
        return last_run + timedelta(hours=self.config.interval_hours)

    def get_maintenance_status(self) -> MaintenanceStatus:
        with self._lock:
            state = self._state
            last_run = self._last_run
            recent = tuple(list(self._history)[:RECENT_JOBS_IN_STATUS])
        return MaintenanceStatus(
            is_running=state == MaintenanceState.RUNNING,
            state=state,
            last_run=last_run,
            next_scheduled_run=self.next_scheduled_run(),
            should_run=self.should_run(),
            config=self.config.to_dict(),
            recent_jobs=recent,
        )

    def get_statistics(self) -> dict:
        """Success rate and duration over recent jobs, plus system alerts."""
        jobs = self.get_history(self.config.alert_thresholds.failed_jobs_window)
        if jobs:
            success_rate = sum(1 for j in jobs if j.success) / len(jobs) * 100
            average_duration = sum(j.duration_ms for j in jobs) / len(jobs)
        else:
            success_rate = 100.0
            average_duration = 0.0

        last_success = next((j.end_time for j in jobs if j.success), None)
        last_failure = next((j.end_time for j in jobs if not j.success), None)

        return {
            "recent_jobs_count": len(jobs),
            "success_rate": round(success_rate),
            "average_duration_ms": round(average_duration),
            "last_successful_run": last_success.isoformat() if last_success else None,
            "last_failed_run": last_failure.isoformat() if last_failure else None,
            "system_healthy": (
                success_rate >= HEALTHY_SUCCESS_RATE
                and average_duration < HEALTHY_AVERAGE_DURATION_MS
            ),
            "alerts": check_system_alerts(self.config, self.last_run, self._clock()),
        }

    # ── Configuration ────────────────────────────────────────────────

    def update_config(self, **changes) -> MaintenanceConfig:
        """Apply configuration changes; affects future runs only.

        ``alert_thresholds`` may be given as a dict of partial changes.
        """
        known = {f.name for f in dataclasses.fields(MaintenanceConfig)}
        unknown = set(changes) - known
        if unknown:
            raise InvalidRequestError(
                f"Unknown maintenance setting(s): {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )

        thresholds = changes.pop("alert_thresholds", None)
        if isinstance(thresholds, dict):
            try:
                thresholds = dataclasses.replace(self.config.alert_thresholds, **thresholds)
            except TypeError as e:
                raise InvalidRequestError(f"Invalid alert thresholds: {e}", field="alert_thresholds")
        if isinstance(thresholds, AlertThresholds):
            changes["alert_thresholds"] = thresholds

        with self._lock:
            self.config = dataclasses.replace(self.config, **changes)
            if self._history.maxlen != self.config.history_size:
                self._history = deque(
                    list(self._history)[: self.config.history_size],
                    maxlen=self.config.history_size,
                )
        self.analytics.max_token_age_days = self.config.max_token_age_days
        self.analytics.unhealthy_failure_threshold = self.config.unhealthy_failure_threshold
        logger.info("Maintenance configuration updated: %s", sorted(changes))
        return self.config

    def disable(self) -> None:
        """Stop future scheduled runs. A running job is not interrupted."""
        self.update_config(enabled=False)

    def enable(self) -> None:
        self.update_config(enabled=True)
