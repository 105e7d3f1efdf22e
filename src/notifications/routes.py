"""Push notification REST endpoints.

Token registration, recipient lookup, activity notifications and the
maintenance trigger used by the scheduled cron job. The service instance
lives on ``app.state.service``; see ``src.app.create_app``.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field

from src.notifications.activities import parse_activity
from src.notifications.service import PushNotificationService, TransferNotificationResult

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/notifications", tags=["Notifications"])


def get_service(request: Request) -> PushNotificationService:
    """Return the service bound to the running app."""
    return request.app.state.service


async def require_cron_secret(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> None:
    """Bearer check for the maintenance trigger."""
    expected = f"Bearer {request.app.state.cron_secret}"
    if authorization != expected:
        logger.warning("Rejected maintenance trigger with bad credentials")
        raise HTTPException(status_code=401, detail="Unauthorized")


# ── Request models ───────────────────────────────────────────────────


class RegisterTokenRequest(BaseModel):
    model_config = {"populate_by_name": True}

    user_id: str = Field(alias="userId")
    token: str
    platform: str
    user_type: str = Field(default="staff", alias="userType")
    device_id: Optional[str] = Field(default=None, alias="deviceId")
    device_name: Optional[str] = Field(default=None, alias="deviceName")
    app_version: Optional[str] = Field(default=None, alias="appVersion")


class DeactivateTokenRequest(BaseModel):
    model_config = {"populate_by_name": True}

    token: Optional[str] = None
    user_id: Optional[str] = Field(default=None, alias="userId")
    reason: str = "Deactivated by user"


class MaintenanceRunRequest(BaseModel):
    model_config = {"populate_by_name": True}

    force: bool = False
    job_type: str = Field(default="full", alias="jobType")
    max_age_in_days: Optional[int] = Field(default=None, alias="maxAgeInDays", ge=1)


# ── Tokens ───────────────────────────────────────────────────────────


@router.post("/push-tokens")
async def register_token(
    body: RegisterTokenRequest,
    service: PushNotificationService = Depends(get_service),
) -> dict:
    """Register or refresh a device push token."""
    record, is_new = service.register_token(
        user_id=body.user_id,
        token=body.token,
        platform=body.platform,
        user_type=body.user_type,
        device_id=body.device_id,
        device_name=body.device_name,
        app_version=body.app_version,
    )
    return {
        "message": "Push token registered" if is_new else "Push token updated",
        "created": is_new,
        "token": record.to_dict(),
    }


@router.get("/push-tokens/{user_id}")
async def list_user_tokens(
    user_id: str,
    include_inactive: bool = False,
    service: PushNotificationService = Depends(get_service),
) -> dict:
    tokens = service.list_user_tokens(user_id, active_only=not include_inactive)
    return {"user_id": user_id, "count": len(tokens), "tokens": [t.to_dict() for t in tokens]}


@router.delete("/push-tokens")
async def deactivate_tokens(
    body: DeactivateTokenRequest,
    service: PushNotificationService = Depends(get_service),
) -> dict:
    """Deactivate one token or every token of a user (e.g. on logout)."""
    count = service.deactivate_tokens(token=body.token, user_id=body.user_id, reason=body.reason)
    return {"deactivated": count}


# ── Recipients ───────────────────────────────────────────────────────


@router.get("/recipients")
async def resolve_recipients(
    client_id: Optional[str] = None,
    project_id: Optional[str] = None,
    recipient_type: str = "all",
    skip_cache: bool = False,
    service: PushNotificationService = Depends(get_service),
) -> dict:
    result = service.resolve_recipients(client_id, project_id, recipient_type, skip_cache=skip_cache)
    return result.to_dict()


@router.delete("/recipients/cache")
async def clear_recipient_cache(
    client_id: Optional[str] = None,
    service: PushNotificationService = Depends(get_service),
) -> dict:
    removed = service.clear_recipient_cache(client_id)
    return {"cleared": removed, "client_id": client_id}


# ── Activities ───────────────────────────────────────────────────────


@router.post("/activities")
async def notify_activity(
    payload: dict[str, Any],
    service: PushNotificationService = Depends(get_service),
) -> dict:
    """Notify the project audience of a newly created activity."""
    result = await service.notify_activity_created(parse_activity(payload))
    if isinstance(result, TransferNotificationResult):
        return result.to_dict()
    return {"primary": result.to_dict(), "secondary": None, "success": result.success}


# ── Maintenance ──────────────────────────────────────────────────────


@router.post("/maintenance/run", dependencies=[Depends(require_cron_secret)])
def run_maintenance(
    body: Optional[MaintenanceRunRequest] = None,
    service: PushNotificationService = Depends(get_service),
) -> dict:
    """Scheduled maintenance trigger. Runs only when due unless forced."""
    body = body or MaintenanceRunRequest()
    job = service.run_maintenance_job(
        body.job_type, force=body.force, max_age_in_days=body.max_age_in_days
    )
    if job is None:
        status = service.get_maintenance_status()
        return {
            "skipped": True,
            "message": "Maintenance not due",
            "next_scheduled_run": status.to_dict()["next_scheduled_run"],
        }
    return {"skipped": False, "job": job.to_dict(), "alerts": list(job.alerts)}


@router.get("/maintenance/status")
async def maintenance_status(
    service: PushNotificationService = Depends(get_service),
) -> dict:
    status = service.get_maintenance_status().to_dict()
    status["statistics"] = service.scheduler.get_statistics()
    return status


# ── Observability ────────────────────────────────────────────────────


@router.get("/stats")
async def token_statistics(service: PushNotificationService = Depends(get_service)) -> dict:
    return service.get_token_statistics()


@router.get("/metrics")
async def metrics(service: PushNotificationService = Depends(get_service)) -> dict:
    return service.get_metrics().to_dict()


@router.post("/metrics/reset")
async def reset_metrics(service: PushNotificationService = Depends(get_service)) -> dict:
    service.reset_metrics()
    return {"message": "Metrics reset"}


@router.get("/health")
async def health(service: PushNotificationService = Depends(get_service)) -> dict:
    return await service.health_check()
