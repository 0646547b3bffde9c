"""Billing webhook and subscription endpoints."""
from __future__ import annotations

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from mealgate.api import schemas
from mealgate.api.dependencies.auth import require_service_token
from mealgate.api.dependencies.database import get_db
from mealgate.api.dependencies.services import get_state_machine
from mealgate.core.logging import get_logger
from mealgate.core.settings import get_settings
from mealgate.services.billing_events import (
    InvalidWebhookPayload,
    load_webhook_payload,
    parse_stripe_event,
)
from mealgate.services.subscriptions import OUTCOME_IGNORED, SubscriptionStateMachine

router = APIRouter(prefix="/api/v1", tags=["billing"])
logger = get_logger(__name__)


@router.post("/billing/webhook", response_model=schemas.WebhookAck, status_code=status.HTTP_202_ACCEPTED)
async def billing_webhook(
    request: Request,
    db: Session = Depends(get_db),
    machine: SubscriptionStateMachine = Depends(get_state_machine),
) -> schemas.WebhookAck:
    payload = await request.body()
    try:
        data = load_webhook_payload(
            payload, request.headers.get("Stripe-Signature"), get_settings().stripe_webhook_secret
        )
    except InvalidWebhookPayload as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    event = parse_stripe_event(data)
    if event is None:
        return schemas.WebhookAck(outcome=OUTCOME_IGNORED, event_id=data.get("id"))

    result = machine.apply_event(db, event)
    db.commit()
    return schemas.WebhookAck(outcome=result.outcome, event_id=event.event_id)


@router.get(
    "/users/{user_id}/subscription",
    response_model=schemas.SubscriptionResponse,
    dependencies=[Depends(require_service_token)],
)
def get_subscription(
    user_id: str,
    db: Session = Depends(get_db),
    machine: SubscriptionStateMachine = Depends(get_state_machine),
) -> schemas.SubscriptionResponse:
    subscription = machine.get_subscription(db, user_id)
    active_plan = machine.get_active_plan(db, user_id)
    if subscription is None:
        return schemas.SubscriptionResponse(
            user_id=user_id, status="none", plan_id="free", active_plan=active_plan
        )
    return schemas.SubscriptionResponse(
        user_id=user_id,
        status=subscription.status,
        plan_id=subscription.plan_id,
        active_plan=active_plan,
        billing_cycle=subscription.billing_cycle,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        grace_until=subscription.grace_until,
    )


@router.post(
    "/users/{user_id}/subscription/cancel",
    response_model=schemas.CancelResponse,
    dependencies=[Depends(require_service_token)],
)
def cancel_subscription(
    user_id: str,
    db: Session = Depends(get_db),
    machine: SubscriptionStateMachine = Depends(get_state_machine),
) -> schemas.CancelResponse:
    settings = get_settings()
    subscription = machine.get_subscription(db, user_id)
    external_ref = subscription.external_ref if subscription is not None else None
    result = machine.cancel(db, user_id)
    db.commit()

    if settings.stripe_api_key and external_ref:
        try:
            stripe.api_key = settings.stripe_api_key
            stripe.Subscription.cancel(external_ref)
        except stripe.StripeError as exc:  # pragma: no cover - depends on Stripe API
            logger.error("stripe_cancel_failed", user_id=user_id, external_ref=external_ref, error=str(exc))
    return schemas.CancelResponse(user_id=user_id, status=result.status, plan_id=result.plan_id)


__all__ = ["router"]
