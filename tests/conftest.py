"""Shared fixtures: an isolated sqlite database and wired-up services."""

from __future__ import annotations

import os
from datetime import datetime

import pytest

os.environ.setdefault("MEALGATE_ENABLE_PROMETHEUS", "false")
os.environ.setdefault("MEALGATE_RATE_LIMIT_REQUESTS", "100000")
os.environ.setdefault("MEALGATE_TASK_QUEUE_BACKEND", "inline")

from mealgate.core.database import Base, configure_database, session_scope  # noqa: E402
from mealgate.core.settings import get_settings  # noqa: E402
from mealgate.services.deferred import DeferredTaskQueue  # noqa: E402
from mealgate.services.entitlements import EntitlementGuard  # noqa: E402
from mealgate.services.referrals import ReferralLedger  # noqa: E402
from mealgate.services.subscriptions import SubscriptionStateMachine  # noqa: E402
from mealgate.services.usage import UsageLedger  # noqa: E402


class RecordingNotifier:
    """Captures outbound messages instead of sending them."""

    def __init__(self) -> None:
        self.user_messages: list[tuple[str, str, dict]] = []
        self.operator_messages: list[tuple[str, str]] = []

    def notify_user(self, user_id: str, template: str, **context) -> None:
        self.user_messages.append((user_id, template, context))

    def notify_operator(self, subject: str, body: str) -> None:
        self.operator_messages.append((subject, body))

    def templates_for(self, user_id: str) -> list[str]:
        return [template for uid, template, _ in self.user_messages if uid == user_id]


@pytest.fixture()
def database(tmp_path):
    get_settings.cache_clear()
    engine = configure_database(f"sqlite:///{tmp_path / 'mealgate-test.db'}")
    import mealgate.core.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def session(database):
    with session_scope() as db:
        yield db


@pytest.fixture()
def settings():
    get_settings.cache_clear()
    return get_settings()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def queue(database, settings, notifier) -> DeferredTaskQueue:
    return DeferredTaskQueue(settings, notifier=notifier, worker_id="worker-a")


@pytest.fixture()
def machine(settings, queue, notifier) -> SubscriptionStateMachine:
    return SubscriptionStateMachine(settings, queue=queue, notifier=notifier)


@pytest.fixture()
def guard(settings, machine) -> EntitlementGuard:
    return EntitlementGuard(settings, subscriptions=machine, usage=UsageLedger(settings))


@pytest.fixture()
def referrals(settings, machine) -> ReferralLedger:
    return ReferralLedger(settings, subscriptions=machine)


@pytest.fixture()
def now() -> datetime:
    return datetime(2026, 3, 10, 12, 0, 0)
