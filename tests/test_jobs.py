from datetime import timedelta

from mealgate.core import models
from mealgate.core.database import session_scope
from mealgate.core.timeutils import utcnow
from mealgate.services.billing_events import BillingEvent, BillingEventType
from mealgate.services.deferred import TASK_RENEWAL_REMINDER
from mealgate.services.notifications import Notifier
from mealgate.services.usage import UsageLedger
from mealgate.tasks.jobs import prune_usage_job, run_sweep_loop
from mealgate.tasks.queue import INLINE_TASKS, get_task_queue


def test_jobs_are_registered_for_inline_dispatch():
    assert "mealgate.sweep_deferred" in INLINE_TASKS
    assert "mealgate.prune_usage" in INLINE_TASKS


def test_inline_sweep_job_reports_summary(database):
    summary = get_task_queue().enqueue("mealgate.sweep_deferred")
    assert summary["claimed"] == 0
    assert summary["task_ids"] == []


def test_prune_drops_counters_past_retention(database, settings):
    today = utcnow()
    ledger = UsageLedger(settings)
    with session_scope() as db:
        ledger.try_consume(db, "u-old", "dailyAnalyses", 3, today - timedelta(days=settings.usage_retention_days + 1))
        ledger.try_consume(db, "u-new", "dailyAnalyses", 3, today)

    assert prune_usage_job() == 1
    with session_scope() as db:
        assert ledger.current(db, "u-new", "dailyAnalyses", today) == 1


def test_sweep_loop_runs_bounded_iterations(database):
    run_sweep_loop(interval=0, iterations=2)


def test_renewal_reminder_is_sent_once(machine, queue, notifier, session, now):
    machine.apply_event(
        session,
        BillingEvent(
            event_id="evt_reminder",
            event_type=BillingEventType.CHECKOUT_COMPLETED,
            occurred_at=now,
            user_id="u-remind",
            plan_id="premium",
            period_start=now,
            period_end=now + timedelta(days=30),
        ),
        now,
    )
    session.commit()

    queue.sweep(now + timedelta(days=27, minutes=1))
    queue.sweep(now + timedelta(days=28))

    assert notifier.templates_for("u-remind") == ["renewal_reminder"]
    sent = [ctx for uid, template, ctx in notifier.user_messages if template == "renewal_reminder"]
    assert sent[0]["days_left"] == 2
    assert queue.list_tasks(session, models.TASK_DONE)[0].task_type == TASK_RENEWAL_REMINDER


def test_notifier_uses_transport_and_formats_template(settings):
    delivered = []
    notifier = Notifier(settings, transport=lambda user_id, body, meta: delivered.append((user_id, body, meta)))
    notifier.notify_user("u-1", "referral_welcome", days=30, plan="premium")
    assert delivered == [
        ("u-1", "Welcome! You received 30 days of premium from a friend.", {"template": "referral_welcome", "days": 30, "plan": "premium"})
    ]


def test_operator_alert_without_smtp_is_logged(settings):
    Notifier(settings).notify_operator("subject", "body")
