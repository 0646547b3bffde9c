"""Admission control for metered actions."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mealgate.core.errors import EntitlementUnavailable
from mealgate.core.logging import get_logger
from mealgate.core.observability import record_decision
from mealgate.core.plans import METERED_ACTIONS, UNLIMITED, get_plan
from mealgate.core.settings import Settings, get_settings
from mealgate.core.timeutils import as_naive_utc, utcnow
from mealgate.services.commands import Command, match_command
from mealgate.services.subscriptions import SubscriptionStateMachine
from mealgate.services.usage import UsageLedger

logger = get_logger(__name__)


@dataclass(slots=True)
class EntitlementDecision:
    allowed: bool
    remaining: int
    limit: int
    plan_id: str
    action: str

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED


class EntitlementGuard:
    """Decides whether a metered action may run and reserves it in one step.

    An allowed decision already counts as recorded usage; callers must not
    record consumption separately.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        subscriptions: SubscriptionStateMachine | None = None,
        usage: UsageLedger | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.subscriptions = subscriptions or SubscriptionStateMachine(self.settings)
        self.usage = usage or UsageLedger(self.settings)

    def check_and_reserve(
        self, db: Session, user_id: str, action: str, now: datetime | None = None
    ) -> EntitlementDecision:
        now = as_naive_utc(now) if now else utcnow()
        try:
            plan = get_plan(self.subscriptions.get_active_plan(db, user_id))
            cap = plan.limit_for(action)
            if cap == UNLIMITED:
                decision = EntitlementDecision(True, UNLIMITED, UNLIMITED, plan.id, action)
            else:
                consumed = self.usage.try_consume(db, user_id, action, cap, now)
                db.commit()
                decision = EntitlementDecision(
                    allowed=consumed.consumed,
                    remaining=max(cap - consumed.count, 0),
                    limit=cap,
                    plan_id=plan.id,
                    action=action,
                )
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("entitlement_store_unavailable", user_id=user_id, action=action, error=str(exc))
            record_decision(action, "unavailable")
            raise EntitlementUnavailable("Quota store unavailable", user_id=user_id, action=action) from exc

        record_decision(action, "allowed" if decision.allowed else "denied")
        if not decision.allowed:
            logger.info("quota_denied", user_id=user_id, action=action, plan_id=plan.id, limit=cap)
        return decision

    def remaining_quota(self, db: Session, user_id: str, now: datetime | None = None) -> dict[str, int]:
        """Headroom per metered action without consuming anything."""
        now = as_naive_utc(now) if now else utcnow()
        plan = get_plan(self.subscriptions.get_active_plan(db, user_id))
        remaining: dict[str, int] = {}
        for action in METERED_ACTIONS:
            cap = plan.limit_for(action)
            if cap == UNLIMITED:
                remaining[action] = UNLIMITED
            else:
                remaining[action] = max(cap - self.usage.current(db, user_id, action, now), 0)
        return remaining

    def gate_command(
        self, db: Session, user_id: str, text: str, now: datetime | None = None
    ) -> tuple[Command, EntitlementDecision | None]:
        command = match_command(text)
        if command.action is None:
            return command, None
        return command, self.check_and_reserve(db, user_id, command.action, now)


__all__ = ["EntitlementDecision", "EntitlementGuard"]
