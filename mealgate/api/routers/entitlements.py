"""Metered-action gate and quota projections."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from mealgate.api import schemas
from mealgate.api.dependencies.auth import require_service_token
from mealgate.api.dependencies.database import get_db
from mealgate.api.dependencies.services import get_entitlement_guard
from mealgate.core.plans import METERED_ACTIONS
from mealgate.services.entitlements import EntitlementDecision, EntitlementGuard

router = APIRouter(prefix="/api/v1", tags=["entitlements"], dependencies=[Depends(require_service_token)])


def _reservation(decision: EntitlementDecision) -> schemas.ReservationResponse:
    return schemas.ReservationResponse(
        action=decision.action,
        allowed=decision.allowed,
        remaining=decision.remaining,
        limit=decision.limit,
        plan_id=decision.plan_id,
    )


@router.post("/users/{user_id}/actions/{action}/reserve", response_model=schemas.ReservationResponse)
def reserve_action(
    user_id: str,
    action: str,
    db: Session = Depends(get_db),
    guard: EntitlementGuard = Depends(get_entitlement_guard),
):
    if action not in METERED_ACTIONS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown action '{action}'")
    decision = guard.check_and_reserve(db, user_id, action)
    body = _reservation(decision)
    if not decision.allowed:
        return JSONResponse(status_code=status.HTTP_429_TOO_MANY_REQUESTS, content=body.model_dump())
    return body


@router.post("/users/{user_id}/commands", response_model=schemas.CommandResponse)
def gate_command(
    user_id: str,
    payload: schemas.CommandRequest,
    db: Session = Depends(get_db),
    guard: EntitlementGuard = Depends(get_entitlement_guard),
) -> schemas.CommandResponse:
    command, decision = guard.gate_command(db, user_id, payload.text)
    return schemas.CommandResponse(
        kind=command.kind.value,
        keyword=command.keyword,
        goal=command.goal.value if command.goal else None,
        action=command.action,
        reservation=_reservation(decision) if decision else None,
    )


@router.get("/users/{user_id}/quota", response_model=schemas.QuotaResponse)
def quota(
    user_id: str,
    db: Session = Depends(get_db),
    guard: EntitlementGuard = Depends(get_entitlement_guard),
) -> schemas.QuotaResponse:
    return schemas.QuotaResponse(
        user_id=user_id,
        plan_id=guard.subscriptions.get_active_plan(db, user_id),
        remaining=guard.remaining_quota(db, user_id),
    )


__all__ = ["router"]
