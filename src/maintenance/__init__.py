"""Push Token Maintenance.

Scheduled, mutually exclusive maintenance over the token store:
cleanup of stale and invalid tokens, health score refresh, usage
analytics and advisory alerting.
"""

from src.maintenance.config import (
    MaintenanceState,
    MaintenanceJobType,
    MaintenanceOptions,
    AlertThresholds,
    MaintenanceConfig,
    DEFAULT_MAINTENANCE_CONFIG,
)
from src.maintenance.models import (
    CleanupResult,
    HealthRefreshResult,
    OperationResult,
    JobSummary,
    MaintenanceJobResult,
)
from src.maintenance.analytics import TokenAnalytics
from src.maintenance.alerts import check_job_alerts, check_system_alerts
from src.maintenance.scheduler import MaintenanceScheduler, MaintenanceStatus

__all__ = [
    # Config
    "MaintenanceState",
    "MaintenanceJobType",
    "MaintenanceOptions",
    "AlertThresholds",
    "MaintenanceConfig",
    "DEFAULT_MAINTENANCE_CONFIG",
    # Models
    "CleanupResult",
    "HealthRefreshResult",
    "OperationResult",
    "JobSummary",
    "MaintenanceJobResult",
    # Components
    "TokenAnalytics",
    "check_job_alerts",
    "check_system_alerts",
    "MaintenanceScheduler",
    "MaintenanceStatus",
]
