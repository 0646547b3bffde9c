"""Deferred task handlers.

Each handler re-reads current state before acting, so a task made stale by a
cancellation, renewal or earlier run completes as a no-op.
"""
from __future__ import annotations

from sqlalchemy.orm import Session

from mealgate.core import models
from mealgate.core.logging import get_logger
from mealgate.services.billing_events import BillingEvent, BillingEventType
from mealgate.services.deferred import (
    TASK_EXPIRE_GRANT,
    TASK_GRACE_EXPIRY,
    TASK_RENEWAL_REMINDER,
    TaskContext,
    register_handler,
)
from mealgate.services.subscriptions import SubscriptionStateMachine

logger = get_logger(__name__)


def _state_machine(context: TaskContext) -> SubscriptionStateMachine:
    return SubscriptionStateMachine(context.settings, queue=context.queue, notifier=context.notifier)


@register_handler(TASK_EXPIRE_GRANT)
def expire_grant(db: Session, task: models.DeferredTask, context: TaskContext) -> None:
    grant_id = int(task.payload["entitlement_grant_id"])
    grant = db.get(models.EntitlementGrant, grant_id)
    if grant is None:
        logger.warning("grant_missing", task_id=str(task.id), grant_id=grant_id)
        return
    if not _state_machine(context).expire_grant(db, grant_id, context.now):
        logger.info("grant_already_expired", task_id=str(task.id), grant_id=grant_id)
        return
    context.notifier.notify_user(grant.user_id, "grant_expired", plan=grant.plan_id)
    logger.info("grant_expired", grant_id=grant_id, user_id=grant.user_id)


@register_handler(TASK_RENEWAL_REMINDER)
def renewal_reminder(db: Session, task: models.DeferredTask, context: TaskContext) -> None:
    subscription = _state_machine(context).get_subscription(db, task.user_id)
    if (
        subscription is None
        or subscription.status != models.SUBSCRIPTION_ACTIVE
        or subscription.current_period_end is None
        or subscription.current_period_end.isoformat() != task.payload.get("period_end")
    ):
        logger.info("renewal_reminder_stale", task_id=str(task.id), user_id=task.user_id)
        return
    days_left = max((subscription.current_period_end - context.now).days, 0)
    context.notifier.notify_user(
        subscription.user_id, "renewal_reminder", plan=subscription.plan_id, days_left=days_left
    )


@register_handler(TASK_GRACE_EXPIRY)
def grace_expiry(db: Session, task: models.DeferredTask, context: TaskContext) -> None:
    machine = _state_machine(context)
    subscription = machine.get_subscription(db, task.user_id)
    if (
        subscription is None
        or subscription.status != models.SUBSCRIPTION_PAST_DUE
        or subscription.grace_until is None
        or subscription.grace_until.isoformat() != task.payload.get("grace_until")
    ):
        logger.info("grace_expiry_stale", task_id=str(task.id), user_id=task.user_id)
        return
    event = BillingEvent(
        event_id=f"grace:{task.id}",
        event_type=BillingEventType.GRACE_EXPIRED,
        occurred_at=context.now,
        user_id=task.user_id,
    )
    result = machine.apply_event(db, event, context.now)
    logger.info("grace_expired", user_id=task.user_id, outcome=result.outcome)


__all__ = ["expire_grant", "grace_expiry", "renewal_reminder"]
