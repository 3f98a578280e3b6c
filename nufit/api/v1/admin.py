"""
Admin and scheduler endpoints (X-API-Key protected).

The sweeps normally run from the in-process scheduler; these endpoints let an
external cron or an operator trigger them on demand.
"""

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel

from nufit.api.deps import get_entitlement_service, get_sweep_runner
from nufit.auth import AdminKey
from nufit.models.entitlement import Entitlement, SweepSummary

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[AdminKey])


class QuotaResetRequest(BaseModel):
    """Manual plan-generation reset; omit user_id to reset every active user."""

    user_id: str | None = None
    tier: str | None = None


class QuotaResetResponse(BaseModel):
    success: bool
    entitlement: Entitlement | None = None
    summary: SweepSummary | None = None


@router.post("/sweeps/expiry", response_model=SweepSummary)
async def run_expiry_sweep(request: Request) -> SweepSummary:
    runner = get_sweep_runner(request)
    return await runner.run_expiry_sweep()


@router.post("/sweeps/quota-reset", response_model=SweepSummary)
async def run_quota_reset_sweep(request: Request) -> SweepSummary:
    runner = get_sweep_runner(request)
    return await runner.run_quota_reset_sweep()


@router.post("/plan-generation-reset", response_model=QuotaResetResponse)
async def reset_plan_generation(body: QuotaResetRequest, request: Request) -> QuotaResetResponse:
    service = get_entitlement_service(request)
    logger.info("admin_quota_reset_requested", target_user_id=body.user_id, tier=body.tier)

    if body.user_id:
        entitlement = await service.admin_reset_quota(body.user_id, tier=body.tier)
        return QuotaResetResponse(success=True, entitlement=entitlement)

    tier = service.catalog.resolve(body.tier) if body.tier else None
    runner = get_sweep_runner(request)
    summary = await runner.run_admin_quota_reset(tier)
    return QuotaResetResponse(success=not summary.pending_user_ids, summary=summary)
