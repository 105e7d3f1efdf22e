"""Data models for push token maintenance."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from src.maintenance.config import MaintenanceState


@dataclass
class CleanupResult:
    """Tallies from one cleanup pass."""

    total_processed: int = 0
    tokens_deactivated: int = 0
    tokens_deleted: int = 0
    expired_tokens: int = 0
    invalid_format_tokens: int = 0
    unhealthy_tokens: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total_processed": self.total_processed,
            "tokens_deactivated": self.tokens_deactivated,
            "tokens_deleted": self.tokens_deleted,
            "cleanup_stats": {
                "expired_tokens": self.expired_tokens,
                "invalid_format_tokens": self.invalid_format_tokens,
                "unhealthy_tokens": self.unhealthy_tokens,
            },
            "errors": list(self.errors),
        }


@dataclass
class HealthRefreshResult:
    """Tallies from one health refresh pass."""

    total_tokens: int = 0
    tokens_refreshed: int = 0
    healthy_tokens: int = 0
    unhealthy_tokens: int = 0
    tokens_deactivated: int = 0
    by_platform: dict[str, int] = field(default_factory=dict)
    by_user_type: dict[str, int] = field(default_factory=dict)
    by_validation_score: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total_tokens": self.total_tokens,
            "tokens_refreshed": self.tokens_refreshed,
            "healthy_tokens": self.healthy_tokens,
            "unhealthy_tokens": self.unhealthy_tokens,
            "tokens_deactivated": self.tokens_deactivated,
            "health_stats": {
                "by_platform": dict(self.by_platform),
                "by_user_type": dict(self.by_user_type),
                "by_validation_score": dict(self.by_validation_score),
            },
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class OperationResult:
    """Outcome of one maintenance phase."""

    executed: bool = False
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"executed": self.executed}
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class JobSummary:
    tokens_processed: int = 0
    tokens_deactivated: int = 0
    tokens_deleted: int = 0
    healthy_tokens: int = 0
    unhealthy_tokens: int = 0
    errors: tuple[str, ...] = ()

    @property
    def unhealthy_percentage(self) -> Optional[float]:
        total = self.healthy_tokens + self.unhealthy_tokens
        return self.unhealthy_tokens / total * 100 if total else None

    def to_dict(self) -> dict:
        return {
            "tokens_processed": self.tokens_processed,
            "tokens_deactivated": self.tokens_deactivated,
            "tokens_deleted": self.tokens_deleted,
            "healthy_tokens": self.healthy_tokens,
            "unhealthy_tokens": self.unhealthy_tokens,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class MaintenanceJobResult:
    """Completed maintenance run. Never mutated once recorded."""

    job_id: str
    start_time: datetime
    end_time: datetime
    duration_ms: float
    state: MaintenanceState
    cleanup: OperationResult = field(default_factory=OperationResult)
    health_refresh: OperationResult = field(default_factory=OperationResult)
    analytics: OperationResult = field(default_factory=OperationResult)
    summary: JobSummary = field(default_factory=JobSummary)
    alerts: tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return not self.summary.errors

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_ms": round(self.duration_ms, 2),
            "success": self.success,
            "state": self.state.value,
            "operations": {
                "cleanup": self.cleanup.to_dict(),
                "health_refresh": self.health_refresh.to_dict(),
                "analytics": self.analytics.to_dict(),
            },
            "summary": self.summary.to_dict(),
            "alerts": list(self.alerts),
        }
