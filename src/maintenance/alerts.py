"""Advisory maintenance alerts.

Alert checks never raise. A failure inside a check becomes an alert line
of its own so the caller still gets a result.
"""

import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional

from src.maintenance.config import AlertThresholds, MaintenanceConfig
from src.maintenance.models import JobSummary

logger = logging.getLogger(__name__)


def check_job_alerts(
    duration_ms: float,
    summary: JobSummary,
    recent_outcomes: Iterable[bool],
    thresholds: AlertThresholds,
) -> list[str]:
    """Alerts for one completed job.

    Args:
        duration_ms: Wall-clock duration of the job.
        summary: The job's summary.
        recent_outcomes: Success flags of recent jobs, newest first,
            including the job being checked.
        thresholds: Alert thresholds.
    """
    alerts: list[str] = []
    try:
        if duration_ms > thresholds.processing_time_minutes * 60 * 1000:
            alerts.append(
                f"Maintenance job took {round(duration_ms / 1000)}s "
                f"(threshold: {thresholds.processing_time_minutes:g}m)"
            )

        if summary.errors:
            alerts.append(f"Maintenance job had {len(summary.errors)} errors")

        unhealthy_pct = summary.unhealthy_percentage
        if unhealthy_pct is not None and unhealthy_pct > thresholds.unhealthy_token_pct:
            alerts.append(
                f"{round(unhealthy_pct)}% of tokens are unhealthy "
                f"(threshold: {thresholds.unhealthy_token_pct:g}%)"
            )

        window = list(recent_outcomes)[: thresholds.failed_jobs_window]
        failed = sum(1 for ok in window if not ok)
        if failed >= thresholds.failed_jobs_count:
            alerts.append(
                f"{failed} of last {len(window)} maintenance jobs failed "
                f"(threshold: {thresholds.failed_jobs_count})"
            )
    except Exception:
        logger.exception("Error checking maintenance alerts")
        alerts.append("Error checking maintenance alerts")

    for alert in alerts:
        logger.warning("Maintenance alert: %s", alert)
    return alerts


def check_system_alerts(
    config: MaintenanceConfig,
    last_run: Optional[datetime],
    now: datetime,
) -> list[str]:
    """Alerts about the schedule itself: overdue, never run, disabled."""
    alerts: list[str] = []
    try:
        if last_run is not None:
            elapsed = now - last_run
            if elapsed > timedelta(hours=config.interval_hours * 2):
                alerts.append(
                    f"Maintenance is overdue by {round(elapsed.total_seconds() / 3600)} hours"
                )
        else:
            alerts.append("Maintenance has never been run")

        if not config.enabled:
            alerts.append("Maintenance is disabled")
    except Exception:
        logger.exception("Error checking system alerts")
        alerts.append("Error checking system alerts")
    return alerts
