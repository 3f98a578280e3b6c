"""Accessors for services stored on app.state at startup."""

from fastapi import HTTPException, Request

from nufit.services.entitlement_service import EntitlementService
from nufit.services.quota_gate import QuotaGate
from nufit.services.scheduler import SweepRunner


def get_entitlement_service(request: Request) -> EntitlementService:
    service = getattr(request.app.state, "entitlement_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Entitlement service unavailable")
    return service


def get_quota_gate(request: Request) -> QuotaGate:
    gate = getattr(request.app.state, "quota_gate", None)
    if gate is None:
        raise HTTPException(status_code=503, detail="Entitlement service unavailable")
    return gate


def get_sweep_runner(request: Request) -> SweepRunner:
    runner = getattr(request.app.state, "sweep_runner", None)
    if runner is None:
        raise HTTPException(status_code=503, detail="Scheduler unavailable")
    return runner
