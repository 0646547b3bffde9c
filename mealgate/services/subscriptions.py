"""Subscription state machine driven by billing events."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from mealgate.core import models
from mealgate.core.database import insert_if_absent
from mealgate.core.errors import (
    DuplicateEvent,
    InvalidPlan,
    SubscriptionNotFound,
    TransitionRejected,
)
from mealgate.core.logging import get_logger
from mealgate.core.observability import record_billing_event
from mealgate.core.plans import FREE_PLAN_ID, get_plan, higher_plan
from mealgate.core.settings import Settings, get_settings
from mealgate.core.timeutils import as_naive_utc, utcnow
from mealgate.services.billing_events import BillingEvent, BillingEventType
from mealgate.services.deferred import (
    TASK_GRACE_EXPIRY,
    TASK_RENEWAL_REMINDER,
    DeferredTaskQueue,
)
from mealgate.services.notifications import Notifier

logger = get_logger(__name__)

LIVE_STATUSES = (models.SUBSCRIPTION_ACTIVE, models.SUBSCRIPTION_PAST_DUE)

PROVIDER_STATUS_MAP = {
    "active": models.SUBSCRIPTION_ACTIVE,
    "trialing": models.SUBSCRIPTION_ACTIVE,
    "past_due": models.SUBSCRIPTION_PAST_DUE,
    "unpaid": models.SUBSCRIPTION_PAST_DUE,
    "canceled": models.SUBSCRIPTION_CANCELED,
    "incomplete_expired": models.SUBSCRIPTION_CANCELED,
}

OUTCOME_APPLIED = "applied"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_REJECTED = "rejected"
OUTCOME_IGNORED = "ignored"


@dataclass(slots=True)
class ApplyResult:
    outcome: str
    event_id: str
    user_id: str | None = None
    status: str | None = None
    plan_id: str | None = None
    period_end: datetime | None = None
    reason: str | None = None

    @property
    def applied(self) -> bool:
        return self.outcome == OUTCOME_APPLIED


@dataclass(slots=True)
class _Transition:
    values: dict[str, Any] = field(default_factory=dict)
    reminder: bool = False
    grace: bool = False
    canceled: bool = False


Evaluator = Callable[[models.Subscription], _Transition]


class SubscriptionStateMachine:
    """Owns subscription rows and applies guarded, idempotent transitions."""

    def __init__(
        self,
        settings: Settings | None = None,
        queue: DeferredTaskQueue | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.notifier = notifier or (queue.notifier if queue else Notifier(self.settings))
        self.queue = queue or DeferredTaskQueue(self.settings, notifier=self.notifier)

    # ------------------------------------------------------------------
    # Read paths
    def get_subscription(self, db: Session, user_id: str) -> models.Subscription | None:
        return db.execute(
            select(models.Subscription)
            .where(models.Subscription.user_id == user_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def get_active_plan(self, db: Session, user_id: str) -> str:
        """Plan that currently governs ``user_id``'s entitlements.

        The paid plan counts while the subscription is active or past due;
        active temporary grants are layered on top and the higher rank wins.
        """
        subscription = self.get_subscription(db, user_id)
        plan_id = FREE_PLAN_ID
        if subscription is not None and subscription.status in LIVE_STATUSES:
            plan_id = subscription.plan_id
        granted = db.execute(
            select(models.EntitlementGrant.plan_id)
            .where(models.EntitlementGrant.user_id == user_id)
            .where(models.EntitlementGrant.status == "active")
        ).scalars()
        for grant_plan in granted:
            plan_id = higher_plan(plan_id, grant_plan)
        return plan_id

    def find_user_by_external_ref(self, db: Session, external_ref: str) -> str | None:
        return db.execute(
            select(models.Subscription.user_id).where(models.Subscription.external_ref == external_ref)
        ).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Write paths
    def apply_event(self, db: Session, event: BillingEvent, now: datetime | None = None) -> ApplyResult:
        """Apply a billing event at most once.

        Duplicates and stale or invalid transitions are recorded and reported
        through the returned :class:`ApplyResult`, never raised.
        """
        now = as_naive_utc(now) if now else utcnow()
        user_id = event.user_id
        if not user_id and event.external_ref:
            user_id = self.find_user_by_external_ref(db, event.external_ref)
        if not user_id:
            insert_if_absent(
                db,
                models.BillingEventRecord,
                {
                    "event_id": event.event_id,
                    "event_type": event.event_type.value,
                    "outcome": OUTCOME_IGNORED,
                    "detail": "unresolved_user",
                    "received_at": now,
                },
                ("event_id",),
            )
            logger.warning("billing_event_unresolved", event_id=event.event_id, event_type=event.event_type.value)
            record_billing_event(event.event_type.value, OUTCOME_IGNORED)
            return ApplyResult(outcome=OUTCOME_IGNORED, event_id=event.event_id, reason="unresolved_user")

        return self._apply(
            db,
            user_id,
            event.event_id,
            event.event_type.value,
            lambda sub: self._evaluate(sub, event, now),
            now,
        )

    def cancel(self, db: Session, user_id: str, now: datetime | None = None) -> ApplyResult:
        """Cancel immediately on explicit request; pending tasks re-check state later."""
        now = as_naive_utc(now) if now else utcnow()
        subscription = self.get_subscription(db, user_id)
        if subscription is None or subscription.status not in LIVE_STATUSES:
            raise SubscriptionNotFound(f"No active subscription for user {user_id}", user_id=user_id)
        event = BillingEvent(
            event_id=f"cancel:{uuid.uuid4().hex}",
            event_type=BillingEventType.CANCEL_REQUESTED,
            occurred_at=now,
            user_id=user_id,
        )
        result = self.apply_event(db, event, now)
        if not result.applied:
            raise SubscriptionNotFound(f"No active subscription for user {user_id}", user_id=user_id)
        return result

    def extend_period(
        self, db: Session, user_id: str, days: int, event_id: str, now: datetime | None = None
    ) -> ApplyResult:
        """Push the paid period end of an active subscription forward by ``days``."""
        now = as_naive_utc(now) if now else utcnow()

        def evaluate(sub: models.Subscription) -> _Transition:
            if sub.status != models.SUBSCRIPTION_ACTIVE or sub.current_period_end is None:
                raise TransitionRejected("invalid_state", status=sub.status)
            return _Transition(
                values={"current_period_end": sub.current_period_end + timedelta(days=days)},
                reminder=True,
            )

        return self._apply(db, user_id, event_id, "period_extension", evaluate, now)

    # ------------------------------------------------------------------
    # Temporary grants
    def grant_temporary_plan(
        self,
        db: Session,
        user_id: str,
        plan_id: str,
        starts_at: datetime,
        expires_at: datetime,
        source: str = "referral",
        referral_grant_id: int | None = None,
    ) -> models.EntitlementGrant:
        get_plan(plan_id)
        grant = models.EntitlementGrant(
            user_id=user_id,
            plan_id=plan_id,
            source=source,
            referral_grant_id=referral_grant_id,
            starts_at=as_naive_utc(starts_at),
            expires_at=as_naive_utc(expires_at),
            status="active",
        )
        db.add(grant)
        db.flush()
        logger.info(
            "entitlement_granted",
            user_id=user_id,
            plan_id=plan_id,
            grant_id=grant.id,
            expires_at=grant.expires_at.isoformat(),
        )
        return grant

    def expire_grant(self, db: Session, grant_id: int, now: datetime) -> bool:
        result = db.execute(
            update(models.EntitlementGrant)
            .where(models.EntitlementGrant.id == grant_id)
            .where(models.EntitlementGrant.status == "active")
            .values(status="expired", expired_at=now)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    def _apply(
        self,
        db: Session,
        user_id: str,
        event_id: str,
        event_type: str,
        evaluate: Evaluator,
        now: datetime,
    ) -> ApplyResult:
        try:
            self._claim_event(db, user_id, event_id, event_type, now)
        except DuplicateEvent:
            logger.info("billing_event_duplicate", event_id=event_id, user_id=user_id)
            record_billing_event(event_type, OUTCOME_DUPLICATE)
            subscription = self.get_subscription(db, user_id)
            return self._result(OUTCOME_DUPLICATE, event_id, user_id, subscription)

        for attempt in range(1, self.settings.transition_retry_limit + 1):
            subscription = self.get_subscription(db, user_id)
            stored = subscription is not None
            if not stored:
                # Unsaved placeholder; the row is only written once a transition applies.
                subscription = models.Subscription(
                    user_id=user_id,
                    plan_id=FREE_PLAN_ID,
                    status=models.SUBSCRIPTION_NONE,
                    billing_cycle="monthly",
                    last_event_id=None,
                )
            elif subscription.last_event_id == event_id:
                return self._result(OUTCOME_DUPLICATE, event_id, user_id, subscription)
            try:
                transition = evaluate(subscription)
            except TransitionRejected as exc:
                return self._reject(db, event_id, event_type, user_id, subscription, exc.reason)

            if not stored:
                insert_if_absent(
                    db,
                    models.Subscription,
                    {
                        "user_id": user_id,
                        "plan_id": FREE_PLAN_ID,
                        "status": models.SUBSCRIPTION_NONE,
                        "billing_cycle": "monthly",
                        "created_at": now,
                        "updated_at": now,
                    },
                    ("user_id",),
                )

            seen = subscription.last_event_id
            values = dict(transition.values, last_event_id=event_id, updated_at=now)
            result = db.execute(
                update(models.Subscription)
                .where(models.Subscription.user_id == user_id)
                .where(models.Subscription.last_event_id.is_not_distinct_from(seen))
                .values(**values)
            )
            if result.rowcount == 1:
                subscription = self.get_subscription(db, user_id)
                self._run_effects(db, subscription, transition, now)
                logger.info(
                    "subscription_transition_applied",
                    event_id=event_id,
                    event_type=event_type,
                    user_id=user_id,
                    status=subscription.status,
                    plan_id=subscription.plan_id,
                    period_end=subscription.current_period_end.isoformat()
                    if subscription.current_period_end
                    else None,
                )
                record_billing_event(event_type, OUTCOME_APPLIED)
                return self._result(OUTCOME_APPLIED, event_id, user_id, subscription)
            logger.info("subscription_transition_conflict", event_id=event_id, user_id=user_id, attempt=attempt)

        return self._reject(
            db, event_id, event_type, user_id, self.get_subscription(db, user_id), "concurrent_modification"
        )

    def _claim_event(self, db: Session, user_id: str, event_id: str, event_type: str, now: datetime) -> None:
        created = insert_if_absent(
            db,
            models.BillingEventRecord,
            {
                "event_id": event_id,
                "event_type": event_type,
                "user_id": user_id,
                "outcome": OUTCOME_APPLIED,
                "received_at": now,
            },
            ("event_id",),
        )
        if not created:
            raise DuplicateEvent(event_id)

    def _reject(
        self,
        db: Session,
        event_id: str,
        event_type: str,
        user_id: str,
        subscription: models.Subscription | None,
        reason: str,
    ) -> ApplyResult:
        db.execute(
            update(models.BillingEventRecord)
            .where(models.BillingEventRecord.event_id == event_id)
            .values(outcome=OUTCOME_REJECTED, detail=reason)
        )
        logger.warning(
            "subscription_transition_rejected",
            event_id=event_id,
            event_type=event_type,
            user_id=user_id,
            reason=reason,
            status=subscription.status if subscription else None,
        )
        record_billing_event(event_type, OUTCOME_REJECTED)
        result = self._result(OUTCOME_REJECTED, event_id, user_id, subscription)
        result.reason = reason
        return result

    @staticmethod
    def _result(
        outcome: str, event_id: str, user_id: str, subscription: models.Subscription | None
    ) -> ApplyResult:
        if subscription is None:
            return ApplyResult(outcome=outcome, event_id=event_id, user_id=user_id)
        return ApplyResult(
            outcome=outcome,
            event_id=event_id,
            user_id=user_id,
            status=subscription.status,
            plan_id=subscription.plan_id,
            period_end=subscription.current_period_end,
        )

    # ------------------------------------------------------------------
    def _evaluate(self, sub: models.Subscription, event: BillingEvent, now: datetime) -> _Transition:
        kind = event.event_type
        if kind is BillingEventType.CHECKOUT_COMPLETED:
            return self._on_checkout(sub, event)
        if kind is BillingEventType.PAYMENT_SUCCEEDED:
            return self._on_payment_succeeded(sub, event)
        if kind is BillingEventType.PAYMENT_FAILED:
            return self._on_payment_failed(sub, event, now)
        if kind is BillingEventType.SUBSCRIPTION_UPDATED:
            return self._on_subscription_updated(sub, event, now)
        if kind is BillingEventType.SUBSCRIPTION_DELETED:
            self._require_monotonic(sub, as_naive_utc(event.period_end) if event.period_end else None)
            return self._on_cancel(sub)
        if kind in (BillingEventType.CANCEL_REQUESTED, BillingEventType.GRACE_EXPIRED):
            return self._on_cancel(sub)
        raise TransitionRejected("unsupported_event")

    @staticmethod
    def _require_monotonic(sub: models.Subscription, period_end: datetime | None) -> None:
        if period_end and sub.current_period_end and period_end < sub.current_period_end:
            raise TransitionRejected(
                "stale_period_end",
                stored=sub.current_period_end.isoformat(),
                received=period_end.isoformat(),
            )

    def _cycle_days(self, cycle: str) -> int:
        if cycle == "annual":
            return self.settings.annual_period_days
        return self.settings.monthly_period_days

    def _on_checkout(self, sub: models.Subscription, event: BillingEvent) -> _Transition:
        plan_id = event.plan_id or (sub.plan_id if sub.status in LIVE_STATUSES else None)
        if not plan_id:
            raise TransitionRejected("missing_plan")
        try:
            plan = get_plan(plan_id)
        except InvalidPlan:
            raise TransitionRejected("invalid_plan", plan_id=plan_id) from None

        cycle = event.billing_cycle or sub.billing_cycle or "monthly"
        start = as_naive_utc(event.period_start or event.occurred_at)
        end = as_naive_utc(event.period_end) if event.period_end else start + timedelta(days=self._cycle_days(cycle))
        self._require_monotonic(sub, end)
        values: dict[str, Any] = {
            "status": models.SUBSCRIPTION_ACTIVE,
            "plan_id": plan.id,
            "billing_cycle": cycle,
            "current_period_start": start,
            "current_period_end": end,
            "grace_until": None,
        }
        if event.external_ref:
            values["external_ref"] = event.external_ref
        return _Transition(values=values, reminder=True)

    def _on_payment_succeeded(self, sub: models.Subscription, event: BillingEvent) -> _Transition:
        if sub.status not in LIVE_STATUSES:
            raise TransitionRejected("invalid_state", status=sub.status)
        period_end = as_naive_utc(event.period_end) if event.period_end else None
        self._require_monotonic(sub, period_end)
        values: dict[str, Any] = {"status": models.SUBSCRIPTION_ACTIVE, "grace_until": None}
        extended = bool(period_end and (sub.current_period_end is None or period_end > sub.current_period_end))
        if extended:
            values["current_period_end"] = period_end
            if event.period_start:
                values["current_period_start"] = as_naive_utc(event.period_start)
        if event.external_ref and not sub.external_ref:
            values["external_ref"] = event.external_ref
        return _Transition(values=values, reminder=extended)

    def _on_payment_failed(self, sub: models.Subscription, event: BillingEvent, now: datetime) -> _Transition:
        self._require_monotonic(sub, as_naive_utc(event.period_end) if event.period_end else None)
        if sub.status == models.SUBSCRIPTION_PAST_DUE:
            return _Transition()
        if sub.status != models.SUBSCRIPTION_ACTIVE:
            raise TransitionRejected("invalid_state", status=sub.status)
        return _Transition(
            values={
                "status": models.SUBSCRIPTION_PAST_DUE,
                "grace_until": now + timedelta(days=self.settings.grace_period_days),
            },
            grace=True,
        )

    def _on_subscription_updated(
        self, sub: models.Subscription, event: BillingEvent, now: datetime
    ) -> _Transition:
        if sub.status not in LIVE_STATUSES:
            raise TransitionRejected("invalid_state", status=sub.status)
        period_end = as_naive_utc(event.period_end) if event.period_end else None
        self._require_monotonic(sub, period_end)

        target = PROVIDER_STATUS_MAP.get(event.provider_status or "", sub.status)
        if target == models.SUBSCRIPTION_CANCELED:
            return self._on_cancel(sub)

        values: dict[str, Any] = {}
        transition = _Transition(values=values)
        if event.plan_id:
            try:
                values["plan_id"] = get_plan(event.plan_id).id
            except InvalidPlan:
                raise TransitionRejected("invalid_plan", plan_id=event.plan_id) from None
        if period_end and (sub.current_period_end is None or period_end > sub.current_period_end):
            values["current_period_end"] = period_end
            if event.period_start:
                values["current_period_start"] = as_naive_utc(event.period_start)
            transition.reminder = True

        if target == models.SUBSCRIPTION_PAST_DUE and sub.status == models.SUBSCRIPTION_ACTIVE:
            values["status"] = models.SUBSCRIPTION_PAST_DUE
            values["grace_until"] = now + timedelta(days=self.settings.grace_period_days)
            transition.grace = True
        elif target == models.SUBSCRIPTION_ACTIVE:
            values["status"] = models.SUBSCRIPTION_ACTIVE
            values["grace_until"] = None
        return transition

    @staticmethod
    def _on_cancel(sub: models.Subscription) -> _Transition:
        if sub.status not in LIVE_STATUSES:
            raise TransitionRejected("invalid_state", status=sub.status)
        return _Transition(
            values={
                "status": models.SUBSCRIPTION_CANCELED,
                "plan_id": FREE_PLAN_ID,
                "grace_until": None,
            },
            canceled=True,
        )

    # ------------------------------------------------------------------
    def _run_effects(
        self, db: Session, sub: models.Subscription, transition: _Transition, now: datetime
    ) -> None:
        if transition.reminder and sub.current_period_end is not None:
            remind_at = sub.current_period_end - timedelta(days=self.settings.renewal_reminder_days)
            if remind_at > now:
                self.queue.schedule(
                    db,
                    TASK_RENEWAL_REMINDER,
                    sub.user_id,
                    {"period_end": sub.current_period_end.isoformat(), "plan_id": sub.plan_id},
                    remind_at,
                )
        if transition.grace and sub.grace_until is not None:
            self.queue.schedule(
                db,
                TASK_GRACE_EXPIRY,
                sub.user_id,
                {"grace_until": sub.grace_until.isoformat()},
                sub.grace_until,
            )
            self.notifier.notify_user(
                sub.user_id, "payment_failed", grace_until=sub.grace_until.date().isoformat()
            )
        if transition.canceled:
            self.notifier.notify_user(sub.user_id, "subscription_canceled")


__all__ = [
    "ApplyResult",
    "LIVE_STATUSES",
    "OUTCOME_APPLIED",
    "OUTCOME_DUPLICATE",
    "OUTCOME_IGNORED",
    "OUTCOME_REJECTED",
    "SubscriptionStateMachine",
]
