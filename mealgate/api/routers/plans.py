"""Plan catalog listing."""
from __future__ import annotations

from fastapi import APIRouter

from mealgate.api import schemas
from mealgate.core.plans import get_plan, list_plans

router = APIRouter(prefix="/api/v1", tags=["plans"])


def _to_response(plan) -> schemas.PlanResponse:
    return schemas.PlanResponse(
        id=plan.id,
        display_name=plan.display_name,
        price=plan.price,
        annual_price=plan.annual_price,
        limits=dict(plan.limits),
        features=list(plan.features),
    )


@router.get("/plans", response_model=list[schemas.PlanResponse])
def plans() -> list[schemas.PlanResponse]:
    return [_to_response(plan) for plan in list_plans()]


@router.get("/plans/{plan_id}", response_model=schemas.PlanResponse)
def plan_detail(plan_id: str) -> schemas.PlanResponse:
    return _to_response(get_plan(plan_id))


__all__ = ["router"]
