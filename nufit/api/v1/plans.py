"""Quota-gated nutrition plan generation."""

from typing import Any, Protocol

import structlog
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from nufit.api.deps import get_quota_gate
from nufit.auth import CurrentUser, ensure_own_account

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["plans"])


class PlanGenerator(Protocol):
    """Produces a nutrition plan; owned by the plan-generation collaborator."""

    async def generate(self, user_id: str, preferences: dict[str, Any]) -> dict[str, Any]:
        ...


class PlanRequest(BaseModel):
    """Plan generation request."""

    preferences: dict[str, Any] = Field(default_factory=dict)


class PlanResponse(BaseModel):
    """Generated plan plus the quota left after it."""

    plan: dict[str, Any]
    quota_remaining: int


def _get_plan_generator(request: Request) -> PlanGenerator:
    generator = getattr(request.app.state, "plan_generator", None)
    if generator is None:
        raise HTTPException(status_code=503, detail="Plan generation unavailable")
    return generator


@router.post("/users/{user_id}/nutrition-plans", response_model=PlanResponse, status_code=201)
async def generate_plan(
    user_id: str,
    body: PlanRequest,
    request: Request,
    user: CurrentUser,
) -> PlanResponse:
    """
    Generate a plan if the user has an active subscription with quota left.

    Quota is consumed only after the generator returns; a failed generation
    costs nothing.
    """
    ensure_own_account(user, user_id)
    structlog.contextvars.bind_contextvars(user_id=user_id)
    gate = get_quota_gate(request)
    generator = _get_plan_generator(request)

    await gate.authorize(user_id)
    try:
        plan = await generator.generate(user_id, body.preferences)
    except Exception as e:
        logger.error("plan_generation_failed", error=str(e), error_type=type(e).__name__)
        raise HTTPException(status_code=502, detail="Plan generation failed")

    remaining = await gate.consume(user_id)
    logger.info("plan_generated", quota_remaining=remaining)
    return PlanResponse(plan=plan, quota_remaining=remaining)
