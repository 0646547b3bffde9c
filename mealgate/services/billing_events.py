"""Normalisation of billing-provider webhook payloads."""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import stripe

from mealgate.core.logging import get_logger
from mealgate.core.timeutils import from_timestamp, utcnow

logger = get_logger(__name__)


class BillingEventType(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    CANCEL_REQUESTED = "cancel_requested"
    GRACE_EXPIRED = "grace_expired"


STRIPE_EVENT_TYPES: dict[str, BillingEventType] = {
    "checkout.session.completed": BillingEventType.CHECKOUT_COMPLETED,
    "invoice.payment_succeeded": BillingEventType.PAYMENT_SUCCEEDED,
    "invoice.paid": BillingEventType.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": BillingEventType.PAYMENT_FAILED,
    "customer.subscription.updated": BillingEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": BillingEventType.SUBSCRIPTION_DELETED,
}


@dataclass(frozen=True, slots=True)
class BillingEvent:
    event_id: str
    event_type: BillingEventType
    occurred_at: datetime
    user_id: str | None = None
    plan_id: str | None = None
    billing_cycle: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    external_ref: str | None = None
    provider_status: str | None = None


class InvalidWebhookPayload(ValueError):
    pass


def load_webhook_payload(payload: bytes, sig_header: str | None, secret: str | None) -> dict[str, Any]:
    """Verify the Stripe signature when a secret is configured and decode the body."""
    if secret:
        if not sig_header:
            raise InvalidWebhookPayload("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, sig_header, secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise InvalidWebhookPayload("Invalid signature") from exc
    try:
        data = json.loads(payload.decode() or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidWebhookPayload("Malformed JSON payload") from exc
    if not isinstance(data, dict):
        raise InvalidWebhookPayload("Webhook payload must be an object")
    return data


def _metadata(obj: dict[str, Any]) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    candidates = [
        ((obj.get("parent") or {}).get("subscription_details") or {}).get("metadata"),
        (obj.get("subscription_details") or {}).get("metadata"),
    ]
    lines = (obj.get("lines") or {}).get("data") or []
    if lines:
        candidates.append(lines[0].get("metadata"))
    candidates.append(obj.get("metadata"))
    for candidate in candidates:
        if candidate:
            merged.update(candidate)
    return merged


def _period(obj: dict[str, Any], kind: BillingEventType) -> tuple[datetime | None, datetime | None]:
    if kind in (BillingEventType.PAYMENT_SUCCEEDED, BillingEventType.PAYMENT_FAILED):
        lines = (obj.get("lines") or {}).get("data") or []
        period = lines[0].get("period") if lines else None
        if period:
            return from_timestamp(period.get("start")), from_timestamp(period.get("end"))
        return from_timestamp(obj.get("period_start")), from_timestamp(obj.get("period_end"))
    if kind in (BillingEventType.SUBSCRIPTION_UPDATED, BillingEventType.SUBSCRIPTION_DELETED):
        start, end = obj.get("current_period_start"), obj.get("current_period_end")
        items = (obj.get("items") or {}).get("data") or []
        if end is None and items:
            start, end = items[0].get("current_period_start"), items[0].get("current_period_end")
        return from_timestamp(start), from_timestamp(end)
    metadata = _metadata(obj)
    return from_timestamp(metadata.get("period_start")), from_timestamp(metadata.get("period_end"))


def _external_ref(obj: dict[str, Any], kind: BillingEventType) -> str | None:
    if kind in (BillingEventType.SUBSCRIPTION_UPDATED, BillingEventType.SUBSCRIPTION_DELETED):
        return obj.get("id")
    subscription = obj.get("subscription")
    if not subscription:
        subscription = ((obj.get("parent") or {}).get("subscription_details") or {}).get("subscription")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    return subscription or obj.get("customer")


def parse_stripe_event(event: dict[str, Any]) -> BillingEvent | None:
    """Translate a Stripe event into a :class:`BillingEvent`.

    Returns ``None`` for event types the state machine does not consume.
    """
    kind = STRIPE_EVENT_TYPES.get(event.get("type", ""))
    event_id = event.get("id")
    if kind is None or not event_id:
        logger.info("billing_event_ignored", stripe_type=event.get("type"), event_id=event_id)
        return None

    obj = (event.get("data") or {}).get("object") or {}
    metadata = _metadata(obj)
    period_start, period_end = _period(obj, kind)
    plan_id = metadata.get("plan") or metadata.get("planType")
    return BillingEvent(
        event_id=event_id,
        event_type=kind,
        occurred_at=from_timestamp(event.get("created")) or utcnow(),
        user_id=metadata.get("user_id") or metadata.get("userPhone"),
        plan_id=plan_id.lower() if plan_id else None,
        billing_cycle=metadata.get("billing_cycle") or metadata.get("billingCycle"),
        period_start=period_start,
        period_end=period_end,
        external_ref=_external_ref(obj, kind),
        provider_status=obj.get("status") if kind is BillingEventType.SUBSCRIPTION_UPDATED else None,
    )


__all__ = [
    "BillingEvent",
    "BillingEventType",
    "InvalidWebhookPayload",
    "STRIPE_EVENT_TYPES",
    "load_webhook_payload",
    "parse_stripe_event",
]
