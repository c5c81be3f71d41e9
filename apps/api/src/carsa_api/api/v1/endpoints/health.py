from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from carsa_api.core.settings import settings
from carsa_api.db.session import get_session


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error"]
    detail: str | None = Field(default=None, description="Human readable status detail")
    last_error_at: str | None = Field(default=None, description="ISO timestamp of most recent error")
    last_success_at: str | None = Field(default=None, description="ISO timestamp of most recent success")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
        components["database"] = ComponentStatus(status="ready")
    except SQLAlchemyError as exc:
        logger.exception("Readiness database probe failed")
        components["database"] = ComponentStatus(status="error", detail=str(exc))
        status = "error"

    worker = getattr(request.app.state, "reconciliation_worker", None)
    if settings.reconciliation_worker_enabled and worker is not None:
        running = bool(getattr(worker, "is_running", False))
        worker_status: Literal["ready", "starting", "disabled", "error"] = "ready" if running else "starting"
        detail = None if running else "Reconciliation worker not running"
        if worker.last_error:
            worker_status = "error"
            detail = worker.last_error
        if worker_status != "ready" and status == "ready":
            status = "degraded"
        components["reconciliation_worker"] = ComponentStatus(
            status=worker_status,
            detail=detail,
            last_error_at=worker.last_error_at.isoformat() if worker.last_error_at else None,
            last_success_at=worker.last_run_at.isoformat() if worker.last_run_at else None,
        )
    else:
        components["reconciliation_worker"] = ComponentStatus(
            status="disabled",
            detail="Reconciliation worker disabled via settings",
        )

    return ReadinessPayload(status=status, components=components)
