"""Quota admission, day rollover and the concurrent last-unit race."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from mealgate.core import models
from mealgate.core.database import session_scope
from mealgate.core.errors import EntitlementUnavailable
from mealgate.core.plans import ACTION_ANALYSIS, ACTION_DIET, ACTION_VOICE, UNLIMITED
from mealgate.services.billing_events import BillingEvent, BillingEventType
from mealgate.services.commands import CommandKind
from mealgate.services.usage import UsageLedger


def _activate(machine, session, user_id, plan_id, now):
    result = machine.apply_event(
        session,
        BillingEvent(
            event_id=f"evt_checkout_{user_id}_{plan_id}",
            event_type=BillingEventType.CHECKOUT_COMPLETED,
            occurred_at=now,
            user_id=user_id,
            plan_id=plan_id,
            period_start=now,
            period_end=now + timedelta(days=30),
        ),
        now,
    )
    session.commit()
    return result


def test_free_user_gets_three_analyses_per_day(guard, session, now):
    decisions = [guard.check_and_reserve(session, "5511999990001", ACTION_ANALYSIS, now) for _ in range(4)]

    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert [d.remaining for d in decisions] == [2, 1, 0, 0]
    assert decisions[-1].limit == 3
    assert decisions[-1].plan_id == "free"


def test_quota_resets_on_the_next_day(guard, session, now):
    for _ in range(3):
        guard.check_and_reserve(session, "u-reset", ACTION_ANALYSIS, now)
    assert not guard.check_and_reserve(session, "u-reset", ACTION_ANALYSIS, now).allowed

    tomorrow = now + timedelta(days=1)
    decision = guard.check_and_reserve(session, "u-reset", ACTION_ANALYSIS, tomorrow)
    assert decision.allowed
    assert decision.remaining == 2


def test_actions_are_counted_independently(guard, session, now):
    for _ in range(3):
        guard.check_and_reserve(session, "u-split", ACTION_ANALYSIS, now)
    voice = guard.check_and_reserve(session, "u-split", ACTION_VOICE, now)
    assert voice.allowed
    assert voice.remaining == 4


def test_zero_limit_is_denied_without_consuming(guard, session, now):
    decision = guard.check_and_reserve(session, "u-diet", ACTION_DIET, now)
    assert not decision.allowed
    assert decision.remaining == 0
    assert guard.usage.current(session, "u-diet", ACTION_DIET, now) == 0


def test_unlimited_plan_never_touches_counters(guard, machine, session, now):
    _activate(machine, session, "u-premium", "premium", now)

    for _ in range(10):
        decision = guard.check_and_reserve(session, "u-premium", ACTION_ANALYSIS, now)
        assert decision.allowed
        assert decision.unlimited
        assert decision.remaining == UNLIMITED

    counters = session.execute(
        select(models.UsageCounter).where(models.UsageCounter.user_id == "u-premium")
    ).scalars().all()
    assert counters == []


def test_premium_diet_generations_are_capped(guard, machine, session, now):
    _activate(machine, session, "u-cap", "premium", now)
    decisions = [guard.check_and_reserve(session, "u-cap", ACTION_DIET, now) for _ in range(11)]
    assert sum(d.allowed for d in decisions) == 10
    assert decisions[-1].limit == 10


def test_remaining_quota_projection_does_not_consume(guard, session, now):
    guard.check_and_reserve(session, "u-quota", ACTION_ANALYSIS, now)
    remaining = guard.remaining_quota(session, "u-quota", now)
    assert remaining == {ACTION_ANALYSIS: 2, ACTION_VOICE: 5, ACTION_DIET: 0}
    assert guard.remaining_quota(session, "u-quota", now) == remaining


def test_gate_command_reserves_for_metered_commands(guard, session, now):
    command, decision = guard.gate_command(session, "u-cmd", "arroz com feijao", now)
    assert command.kind is CommandKind.MEAL_DESCRIPTION
    assert decision is not None and decision.allowed

    command, decision = guard.gate_command(session, "u-cmd", "ajuda", now)
    assert command.kind is CommandKind.HELP
    assert decision is None


def test_quota_day_follows_configured_timezone(settings, now):
    settings_sp = settings.model_copy(update={"quota_timezone": "America/Sao_Paulo"})
    ledger = UsageLedger(settings_sp)
    # 01:30 UTC is still the previous evening in Sao Paulo.
    assert ledger.day_for(datetime(2026, 3, 11, 1, 30)) == datetime(2026, 3, 10).date()


def test_store_failure_denies_the_request(guard, session, now, monkeypatch):
    def broken(*args, **kwargs):
        raise OperationalError("UPDATE usage_counters", {}, Exception("database is locked"))

    monkeypatch.setattr(guard.usage, "try_consume", broken)
    with pytest.raises(EntitlementUnavailable) as excinfo:
        guard.check_and_reserve(session, "u-down", ACTION_ANALYSIS, now)
    assert excinfo.value.retryable


def test_concurrent_requests_never_exceed_the_cap(guard, database, now):
    results: list[bool] = []
    lock = threading.Lock()
    barrier = threading.Barrier(8)

    def worker() -> None:
        barrier.wait()
        with session_scope() as db:
            decision = guard.check_and_reserve(db, "u-race", ACTION_ANALYSIS, now)
        with lock:
            results.append(decision.allowed)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 3
    assert results.count(False) == 5
    with session_scope() as db:
        assert guard.usage.current(db, "u-race", ACTION_ANALYSIS, now) == 3
