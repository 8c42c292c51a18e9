from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from repaircoin_api.core.settings import settings
from repaircoin_api.db.session import get_session


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error"]
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


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
    except SQLAlchemyError as error:
        components["database"] = ComponentStatus(status="error", detail=f"Database unreachable ({error})")
        status = "error"

    sweep_worker = getattr(request.app.state, "redemption_sweep_worker", None)
    if settings.redemption_sweep_worker_enabled and sweep_worker is not None:
        running = bool(getattr(sweep_worker, "is_running", False))
        detail = None if running else "Redemption session sweep worker not running"
        if not running:
            status = "degraded" if status != "error" else status
        components["redemption_sweep"] = ComponentStatus(
            status="ready" if running else "starting",
            detail=detail,
        )
    else:
        components["redemption_sweep"] = ComponentStatus(
            status="disabled",
            detail="Redemption sweep worker disabled via settings",
        )

    return ReadinessPayload(status=status, components=components)
