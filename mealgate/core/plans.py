"""Subscription plan catalog and helpers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from mealgate.core.errors import InvalidPlan

PlanName = Literal["free", "premium", "pro", "vip"]

UNLIMITED = -1

ACTION_ANALYSIS = "dailyAnalyses"
ACTION_VOICE = "voiceCommands"
ACTION_DIET = "dietGenerations"
METERED_ACTIONS = (ACTION_ANALYSIS, ACTION_VOICE, ACTION_DIET)


@dataclass(frozen=True, slots=True)
class Plan:
    id: PlanName
    display_name: str
    price: float
    annual_price: float | None
    rank: int
    limits: dict[str, int] = field(default_factory=dict)
    features: tuple[str, ...] = ()

    def limit_for(self, action: str) -> int:
        return self.limits.get(action, 0)


_PLAN_REGISTRY: dict[str, Plan] = {
    "free": Plan(
        id="free",
        display_name="Free",
        price=0.0,
        annual_price=None,
        rank=0,
        limits={ACTION_ANALYSIS: 3, ACTION_VOICE: 5, ACTION_DIET: 0},
        features=("3 analyses per day", "Basic tips", "Limited voice commands"),
    ),
    "premium": Plan(
        id="premium",
        display_name="Premium",
        price=29.90,
        annual_price=299.0,
        rank=1,
        limits={ACTION_ANALYSIS: UNLIMITED, ACTION_VOICE: UNLIMITED, ACTION_DIET: 10},
        features=("Unlimited analyses", "Personalised diets", "Full voice commands", "Weekly reports"),
    ),
    "pro": Plan(
        id="pro",
        display_name="Pro",
        price=59.90,
        annual_price=599.0,
        rank=2,
        limits={ACTION_ANALYSIS: UNLIMITED, ACTION_VOICE: UNLIMITED, ACTION_DIET: UNLIMITED},
        features=("Everything in Premium", "24/7 nutrition coaching", "Custom goals", "Advanced analytics"),
    ),
    "vip": Plan(
        id="vip",
        display_name="VIP",
        price=99.90,
        annual_price=999.0,
        rank=3,
        limits={ACTION_ANALYSIS: UNLIMITED, ACTION_VOICE: UNLIMITED, ACTION_DIET: UNLIMITED},
        features=("Everything in Pro", "Monthly 1:1 consultation", "Exclusive recipes", "VIP support"),
    ),
}

FREE_PLAN_ID = "free"


def get_plan(plan_id: str | None) -> Plan:
    """Return the plan for ``plan_id`` or raise :class:`InvalidPlan`."""
    key = (plan_id or "").lower()
    try:
        return _PLAN_REGISTRY[key]
    except KeyError:
        raise InvalidPlan(f"Unknown plan '{plan_id}'", plan_id=plan_id) from None


def limit_for(plan_id: str, action: str) -> int:
    """Daily cap for ``action`` under ``plan_id``; ``UNLIMITED`` means no cap."""
    return get_plan(plan_id).limit_for(action)


def list_plans() -> list[Plan]:
    return sorted(_PLAN_REGISTRY.values(), key=lambda plan: plan.rank)


def lowest_tier() -> Plan:
    return _PLAN_REGISTRY[FREE_PLAN_ID]


def higher_plan(left: str, right: str) -> str:
    """Return whichever plan id ranks higher; ties keep ``left``."""
    return right if get_plan(right).rank > get_plan(left).rank else left


__all__ = [
    "ACTION_ANALYSIS",
    "ACTION_DIET",
    "ACTION_VOICE",
    "FREE_PLAN_ID",
    "METERED_ACTIONS",
    "Plan",
    "PlanName",
    "UNLIMITED",
    "get_plan",
    "higher_plan",
    "limit_for",
    "list_plans",
    "lowest_tier",
]
