"""Configuration for push token maintenance."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional


class MaintenanceState(Enum):
    """Scheduler state. Completion states persist until the next run starts."""
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    COMPLETED_SUCCESS = "COMPLETED_SUCCESS"
    COMPLETED_WITH_ERRORS = "COMPLETED_WITH_ERRORS"


class MaintenanceJobType(Enum):
    """Preset operation sets for scheduled runs."""
    FULL = "full"
    CLEANUP = "cleanup"
    HEALTH = "health"
    ANALYTICS = "analytics"

    def options(self, max_age_in_days: Optional[int] = None) -> "MaintenanceOptions":
        return MaintenanceOptions(
            include_cleanup=self in (MaintenanceJobType.FULL, MaintenanceJobType.CLEANUP),
            include_health_refresh=self in (MaintenanceJobType.FULL, MaintenanceJobType.HEALTH),
            include_analytics=self in (MaintenanceJobType.FULL, MaintenanceJobType.ANALYTICS),
            max_age_in_days=max_age_in_days,
        )


@dataclass(frozen=True)
class MaintenanceOptions:
    """Which phases one maintenance run executes."""

    include_cleanup: bool = True
    include_health_refresh: bool = True
    include_analytics: bool = True
    max_age_in_days: Optional[int] = None


@dataclass
class AlertThresholds:
    """Post-run alert thresholds."""

    unhealthy_token_pct: float = 25.0
    failed_jobs_count: int = 3
    failed_jobs_window: int = 10
    processing_time_minutes: float = 10.0


@dataclass
class MaintenanceConfig:
    """Maintenance schedule and token policy configuration."""

    enabled: bool = True
    interval_hours: float = 24.0
    max_token_age_days: int = 30
    hard_delete_age_days: int = 90
    health_score_cutoff: int = 50
    low_score_deactivation: int = 25
    unhealthy_failure_threshold: int = 3
    history_size: int = 50
    alert_thresholds: AlertThresholds = field(default_factory=AlertThresholds)

    @classmethod
    def from_settings(cls, settings) -> "MaintenanceConfig":
        return cls(
            enabled=settings.maintenance_enabled,
            interval_hours=settings.maintenance_interval_hours,
            max_token_age_days=settings.max_token_age_days,
            hard_delete_age_days=settings.hard_delete_age_days,
            health_score_cutoff=settings.health_score_cutoff,
            low_score_deactivation=settings.low_score_deactivation,
            unhealthy_failure_threshold=settings.unhealthy_failure_threshold,
            history_size=settings.maintenance_history_size,
            alert_thresholds=AlertThresholds(
                unhealthy_token_pct=settings.alert_unhealthy_token_pct,
                failed_jobs_count=settings.alert_failed_jobs_count,
                failed_jobs_window=settings.alert_failed_jobs_window,
                processing_time_minutes=settings.alert_processing_time_minutes,
            ),
        )

    def to_dict(self) -> dict:
        return asdict(self)


DEFAULT_MAINTENANCE_CONFIG = MaintenanceConfig()
