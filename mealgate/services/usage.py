"""Per-user, per-action, per-day usage counters."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from mealgate.core import models
from mealgate.core.database import insert_if_absent
from mealgate.core.logging import get_logger
from mealgate.core.settings import Settings, get_settings
from mealgate.core.timeutils import quota_day, utcnow

logger = get_logger(__name__)


@dataclass(slots=True)
class ConsumeResult:
    consumed: bool
    count: int


class UsageLedger:
    """Append-only daily counters keyed by (user, action, day)."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    def day_for(self, now: datetime) -> date:
        return quota_day(now, self.settings.quota_timezone)

    def _key(self, user_id: str, action: str, day: date):
        return (
            (models.UsageCounter.user_id == user_id)
            & (models.UsageCounter.action == action)
            & (models.UsageCounter.day == day)
        )

    def try_consume(self, db: Session, user_id: str, action: str, cap: int, now: datetime) -> ConsumeResult:
        """Increment the counter only while it is below ``cap``.

        The check and the increment are a single conditional UPDATE, so two
        concurrent callers can never both take the last unit.
        """
        day = self.day_for(now)
        insert_if_absent(
            db,
            models.UsageCounter,
            {"user_id": user_id, "action": action, "day": day, "count": 0, "updated_at": utcnow()},
            ("user_id", "action", "day"),
        )
        stmt = (
            update(models.UsageCounter)
            .where(self._key(user_id, action, day))
            .where(models.UsageCounter.count < cap)
            .values(count=models.UsageCounter.count + 1, updated_at=utcnow())
            .returning(models.UsageCounter.count)
        )
        new_count = db.execute(stmt).scalar_one_or_none()
        if new_count is not None:
            return ConsumeResult(consumed=True, count=new_count)
        return ConsumeResult(consumed=False, count=self.current(db, user_id, action, now))

    def current(self, db: Session, user_id: str, action: str, now: datetime) -> int:
        day = self.day_for(now)
        count = db.execute(
            select(models.UsageCounter.count).where(self._key(user_id, action, day))
        ).scalar_one_or_none()
        return count or 0

    def prune(self, db: Session, now: datetime) -> int:
        """Delete counters older than the retention window."""
        cutoff = self.day_for(now) - timedelta(days=self.settings.usage_retention_days)
        result = db.execute(delete(models.UsageCounter).where(models.UsageCounter.day < cutoff))
        if result.rowcount:
            logger.info("usage_counters_pruned", rows=result.rowcount, cutoff=cutoff.isoformat())
        return result.rowcount


__all__ = ["ConsumeResult", "UsageLedger"]
