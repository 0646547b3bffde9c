"""Billing-event driven subscription transitions."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from mealgate.core import models
from mealgate.core.errors import SubscriptionNotFound
from mealgate.services.billing_events import BillingEvent, BillingEventType
from mealgate.services.deferred import TASK_GRACE_EXPIRY, TASK_RENEWAL_REMINDER
from mealgate.services.subscriptions import (
    OUTCOME_APPLIED,
    OUTCOME_DUPLICATE,
    OUTCOME_IGNORED,
    OUTCOME_REJECTED,
)

USER = "5511988887777"


def event(event_id, kind, now, **fields):
    fields.setdefault("user_id", USER)
    return BillingEvent(event_id=event_id, event_type=kind, occurred_at=now, **fields)


def checkout(now, event_id="evt_1", plan_id="premium", days=30, **fields):
    return event(
        event_id,
        BillingEventType.CHECKOUT_COMPLETED,
        now,
        plan_id=plan_id,
        period_start=now,
        period_end=now + timedelta(days=days),
        **fields,
    )


def tasks_of(session, task_type):
    return session.execute(
        select(models.DeferredTask).where(models.DeferredTask.task_type == task_type)
    ).scalars().all()


def test_checkout_activates_and_schedules_reminder(machine, session, now):
    result = machine.apply_event(session, checkout(now, external_ref="sub_123"), now)
    session.commit()

    assert result.outcome == OUTCOME_APPLIED
    sub = machine.get_subscription(session, USER)
    assert sub.status == models.SUBSCRIPTION_ACTIVE
    assert sub.plan_id == "premium"
    assert sub.external_ref == "sub_123"
    assert sub.current_period_end == now + timedelta(days=30)
    assert machine.get_active_plan(session, USER) == "premium"

    reminders = tasks_of(session, TASK_RENEWAL_REMINDER)
    assert len(reminders) == 1
    assert reminders[0].scheduled_for == now + timedelta(days=27)


def test_checkout_without_period_uses_billing_cycle(machine, session, now):
    result = machine.apply_event(
        session,
        event("evt_annual", BillingEventType.CHECKOUT_COMPLETED, now, plan_id="pro", billing_cycle="annual"),
        now,
    )
    assert result.applied
    assert result.period_end == now + timedelta(days=365)


def test_duplicate_delivery_is_a_noop(machine, session, now):
    first = machine.apply_event(session, checkout(now), now)
    second = machine.apply_event(session, checkout(now), now)
    session.commit()

    assert first.outcome == OUTCOME_APPLIED
    assert second.outcome == OUTCOME_DUPLICATE
    assert len(tasks_of(session, TASK_RENEWAL_REMINDER)) == 1


def test_stale_renewal_never_shortens_the_period(machine, session, now):
    t = now
    machine.apply_event(session, checkout(t, event_id="evt_1"), t)
    renewal = event(
        "evt_2",
        BillingEventType.PAYMENT_SUCCEEDED,
        t,
        period_start=t + timedelta(days=30),
        period_end=t + timedelta(days=60),
    )
    assert machine.apply_event(session, renewal, t).applied

    stale = event(
        "evt_3",
        BillingEventType.PAYMENT_SUCCEEDED,
        t,
        period_start=t,
        period_end=t + timedelta(days=30),
    )
    result = machine.apply_event(session, stale, t)
    session.commit()

    assert result.outcome == OUTCOME_REJECTED
    assert result.reason == "stale_period_end"
    assert machine.get_subscription(session, USER).current_period_end == t + timedelta(days=60)

    # Redelivering the original checkout is a duplicate, not a rollback.
    assert machine.apply_event(session, checkout(t, event_id="evt_1"), t).outcome == OUTCOME_DUPLICATE
    assert machine.get_subscription(session, USER).current_period_end == t + timedelta(days=60)


def test_payment_failed_enters_grace_then_expires(machine, queue, notifier, session, now):
    machine.apply_event(session, checkout(now), now)
    failed_at = now + timedelta(days=30)
    result = machine.apply_event(session, event("evt_fail", BillingEventType.PAYMENT_FAILED, failed_at), failed_at)
    session.commit()

    assert result.status == models.SUBSCRIPTION_PAST_DUE
    # Past-due users keep their paid plan during grace.
    assert machine.get_active_plan(session, USER) == "premium"
    assert "payment_failed" in notifier.templates_for(USER)
    grace_tasks = tasks_of(session, TASK_GRACE_EXPIRY)
    assert len(grace_tasks) == 1
    assert grace_tasks[0].scheduled_for == failed_at + timedelta(days=3)

    # A second failure during grace changes nothing.
    again = machine.apply_event(session, event("evt_fail_2", BillingEventType.PAYMENT_FAILED, failed_at), failed_at)
    session.commit()
    assert again.applied
    assert len(tasks_of(session, TASK_GRACE_EXPIRY)) == 1

    report = queue.sweep(failed_at + timedelta(days=3, minutes=1))
    assert report.succeeded >= 1
    session.expire_all()
    sub = machine.get_subscription(session, USER)
    assert sub.status == models.SUBSCRIPTION_CANCELED
    assert machine.get_active_plan(session, USER) == "free"


def test_payment_recovery_clears_grace(machine, queue, session, now):
    machine.apply_event(session, checkout(now), now)
    failed_at = now + timedelta(days=30)
    machine.apply_event(session, event("evt_fail", BillingEventType.PAYMENT_FAILED, failed_at), failed_at)
    paid = event(
        "evt_paid",
        BillingEventType.PAYMENT_SUCCEEDED,
        failed_at,
        period_start=now + timedelta(days=30),
        period_end=now + timedelta(days=60),
    )
    assert machine.apply_event(session, paid, failed_at).status == models.SUBSCRIPTION_ACTIVE
    session.commit()

    # The pending grace expiry finds the subscription healthy and does nothing.
    queue.sweep(failed_at + timedelta(days=4))
    session.expire_all()
    sub = machine.get_subscription(session, USER)
    assert sub.status == models.SUBSCRIPTION_ACTIVE
    assert sub.grace_until is None


def test_cancel_request_downgrades_immediately(machine, notifier, session, now):
    machine.apply_event(session, checkout(now), now)
    result = machine.cancel(session, USER, now + timedelta(days=1))
    session.commit()

    assert result.status == models.SUBSCRIPTION_CANCELED
    assert result.plan_id == "free"
    assert "subscription_canceled" in notifier.templates_for(USER)
    assert machine.get_active_plan(session, USER) == "free"


def test_cancel_without_subscription_raises(machine, session, now):
    with pytest.raises(SubscriptionNotFound):
        machine.cancel(session, "nobody", now)


def test_invalid_source_state_is_rejected(machine, session, now):
    result = machine.apply_event(session, event("evt_paid", BillingEventType.PAYMENT_SUCCEEDED, now), now)
    assert result.outcome == OUTCOME_REJECTED
    assert result.reason == "invalid_state"

    record = session.execute(
        select(models.BillingEventRecord).where(models.BillingEventRecord.event_id == "evt_paid")
    ).scalar_one()
    assert record.outcome == OUTCOME_REJECTED


def test_subscription_deleted_cancels(machine, session, now):
    machine.apply_event(session, checkout(now), now)
    result = machine.apply_event(session, event("evt_del", BillingEventType.SUBSCRIPTION_DELETED, now), now)
    assert result.status == models.SUBSCRIPTION_CANCELED


def test_late_deletion_for_an_older_period_is_rejected(machine, session, now):
    machine.apply_event(session, checkout(now, days=60), now)
    stale = event(
        "evt_old_delete",
        BillingEventType.SUBSCRIPTION_DELETED,
        now,
        period_end=now + timedelta(days=1),
    )

    result = machine.apply_event(session, stale, now)
    session.commit()

    assert result.outcome == OUTCOME_REJECTED
    assert result.reason == "stale_period_end"
    sub = machine.get_subscription(session, USER)
    assert sub.status == models.SUBSCRIPTION_ACTIVE
    assert sub.plan_id == "premium"
    assert sub.current_period_end == now + timedelta(days=60)


def test_deletion_for_the_current_period_cancels(machine, session, now):
    machine.apply_event(session, checkout(now, days=60), now)
    current = event(
        "evt_delete",
        BillingEventType.SUBSCRIPTION_DELETED,
        now,
        period_end=now + timedelta(days=60),
    )
    result = machine.apply_event(session, current, now)
    assert result.outcome == OUTCOME_APPLIED
    assert result.status == models.SUBSCRIPTION_CANCELED
    assert machine.get_active_plan(session, USER) == "free"


def test_rejected_event_for_unknown_user_leaves_no_row(machine, session, now):
    result = machine.apply_event(session, event("evt_orphan_paid", BillingEventType.PAYMENT_SUCCEEDED, now), now)
    session.commit()

    assert result.outcome == OUTCOME_REJECTED
    assert machine.get_subscription(session, USER) is None
    assert session.execute(select(models.Subscription)).scalars().all() == []

    assert machine.apply_event(session, checkout(now, event_id="evt_first_checkout"), now).applied
    assert machine.get_subscription(session, USER).status == models.SUBSCRIPTION_ACTIVE


def test_subscription_updated_changes_plan_and_status(machine, session, now):
    machine.apply_event(session, checkout(now), now)
    update = event(
        "evt_upd",
        BillingEventType.SUBSCRIPTION_UPDATED,
        now,
        plan_id="vip",
        provider_status="past_due",
        period_end=now + timedelta(days=30),
    )
    result = machine.apply_event(session, update, now)
    assert result.plan_id == "vip"
    assert result.status == models.SUBSCRIPTION_PAST_DUE


def test_unknown_plan_is_rejected(machine, session, now):
    result = machine.apply_event(session, checkout(now, plan_id="platinum"), now)
    assert result.outcome == OUTCOME_REJECTED
    assert result.reason == "invalid_plan"


def test_event_without_user_is_ignored(machine, session, now):
    orphan = BillingEvent(
        event_id="evt_orphan",
        event_type=BillingEventType.PAYMENT_SUCCEEDED,
        occurred_at=now,
        external_ref="sub_unknown",
    )
    assert machine.apply_event(session, orphan, now).outcome == OUTCOME_IGNORED


def test_user_resolved_from_external_ref(machine, session, now):
    machine.apply_event(session, checkout(now, external_ref="sub_abc"), now)
    renewal = BillingEvent(
        event_id="evt_ref",
        event_type=BillingEventType.PAYMENT_SUCCEEDED,
        occurred_at=now,
        period_end=now + timedelta(days=60),
        external_ref="sub_abc",
    )
    result = machine.apply_event(session, renewal, now)
    assert result.applied
    assert result.user_id == USER


def test_extend_period_is_idempotent(machine, session, now):
    machine.apply_event(session, checkout(now), now)
    first = machine.extend_period(session, USER, 30, event_id="referral:1:extension", now=now)
    second = machine.extend_period(session, USER, 30, event_id="referral:1:extension", now=now)
    assert first.applied
    assert second.outcome == OUTCOME_DUPLICATE
    assert machine.get_subscription(session, USER).current_period_end == now + timedelta(days=60)


def test_reminder_not_scheduled_in_the_past(machine, session):
    now = datetime(2026, 1, 1)
    machine.apply_event(session, checkout(now, days=2), now)
    assert tasks_of(session, TASK_RENEWAL_REMINDER) == []
