"""Service providers injected into routes."""
from __future__ import annotations

from mealgate.core.settings import get_settings
from mealgate.services.deferred import DeferredTaskQueue
from mealgate.services.entitlements import EntitlementGuard
from mealgate.services.referrals import ReferralLedger
from mealgate.services.subscriptions import SubscriptionStateMachine


def get_task_queue() -> DeferredTaskQueue:
    return DeferredTaskQueue(get_settings())


def get_state_machine() -> SubscriptionStateMachine:
    settings = get_settings()
    return SubscriptionStateMachine(settings, queue=DeferredTaskQueue(settings))


def get_entitlement_guard() -> EntitlementGuard:
    settings = get_settings()
    return EntitlementGuard(settings, subscriptions=get_state_machine())


def get_referral_ledger() -> ReferralLedger:
    settings = get_settings()
    return ReferralLedger(settings, subscriptions=get_state_machine())


__all__ = ["get_entitlement_guard", "get_referral_ledger", "get_state_machine", "get_task_queue"]
