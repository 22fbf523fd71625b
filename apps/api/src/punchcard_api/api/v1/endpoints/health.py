from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from punchcard_api.core.settings import settings
from punchcard_api.db.session import get_session
from punchcard_api.observability.scheduler import get_scheduler_store


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error", "degraded"]
    detail: str | None = Field(default=None, description="Human readable status detail")
    last_error_at: str | None = Field(default=None, description="ISO timestamp of most recent error")
    last_success_at: str | None = Field(default=None, description="ISO timestamp of most recent success")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


async def _database_component(session: AsyncSession) -> ComponentStatus:
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as error:
        logger.warning("Readiness database check failed", error=str(error))
        return ComponentStatus(status="error", detail=f"Database unreachable ({error.__class__.__name__})")
    return ComponentStatus(status="ready")


def _scheduler_component(request: Request) -> ComponentStatus:
    scheduler = getattr(request.app.state, "loyalty_job_scheduler", None)
    if not settings.loyalty_job_scheduler_enabled or scheduler is None:
        return ComponentStatus(status="disabled", detail="Loyalty job scheduler disabled via settings")

    running = bool(getattr(scheduler, "is_running", False))
    snapshot = get_scheduler_store().snapshot()
    failing_jobs = snapshot.failing_jobs()
    if failing_jobs:
        last_error_at = max(
            (job.last_error_at for job in snapshot.jobs.values() if job.last_error_at is not None),
            default=None,
        )
        return ComponentStatus(
            status="error",
            detail=f"Jobs failing: {', '.join(sorted(failing_jobs))}",
            last_error_at=last_error_at.isoformat() if last_error_at else None,
        )
    if not running:
        return ComponentStatus(status="starting", detail="Loyalty job scheduler not running")
    return ComponentStatus(status="ready")


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {
        "database": await _database_component(session),
        "loyalty_scheduler": _scheduler_component(request),
    }

    status: Literal["ready", "degraded", "error"] = "ready"
    if components["database"].status == "error":
        status = "error"
    elif components["loyalty_scheduler"].status in {"error", "starting"}:
        status = "degraded"

    return ReadinessPayload(status=status, components=components)
