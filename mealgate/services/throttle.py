"""Durable per-actor failure throttling shared by every service instance."""
from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from mealgate.core import models
from mealgate.core.database import insert_if_absent
from mealgate.core.errors import TooManyAttempts
from mealgate.core.logging import get_logger

logger = get_logger(__name__)


class ActorThrottle:
    def __init__(self, scope: str, max_failures: int, window_seconds: int, lockout_seconds: int) -> None:
        self.scope = scope
        self.max_failures = max_failures
        self.window = timedelta(seconds=window_seconds)
        self.lockout = timedelta(seconds=lockout_seconds)

    def _row(self, db: Session, actor: str) -> models.ActorAttempt | None:
        return db.execute(
            select(models.ActorAttempt)
            .where(models.ActorAttempt.scope == self.scope)
            .where(models.ActorAttempt.actor == actor)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def check(self, db: Session, actor: str, now: datetime) -> None:
        row = self._row(db, actor)
        if row is not None and row.locked_until is not None and row.locked_until > now:
            retry_after = int((row.locked_until - now).total_seconds()) or 1
            raise TooManyAttempts(retry_after, scope=self.scope, actor=actor)

    def record_failure(self, db: Session, actor: str, now: datetime) -> int:
        """Count a failure and lock the actor once the threshold is reached."""
        insert_if_absent(
            db,
            models.ActorAttempt,
            {"scope": self.scope, "actor": actor, "failures": 0, "window_started_at": now},
            ("scope", "actor"),
        )
        key = (models.ActorAttempt.scope == self.scope) & (models.ActorAttempt.actor == actor)
        # An expired window restarts the count.
        db.execute(
            update(models.ActorAttempt)
            .where(key)
            .where(models.ActorAttempt.window_started_at < now - self.window)
            .values(failures=0, window_started_at=now, locked_until=None)
        )
        failures = db.execute(
            update(models.ActorAttempt)
            .where(key)
            .values(failures=models.ActorAttempt.failures + 1)
            .returning(models.ActorAttempt.failures)
        ).scalar_one()
        if failures >= self.max_failures:
            db.execute(update(models.ActorAttempt).where(key).values(locked_until=now + self.lockout))
            logger.warning("actor_locked_out", scope=self.scope, actor=actor, failures=failures)
        return failures

    def reset(self, db: Session, actor: str) -> None:
        db.execute(
            delete(models.ActorAttempt)
            .where(models.ActorAttempt.scope == self.scope)
            .where(models.ActorAttempt.actor == actor)
        )


__all__ = ["ActorThrottle"]
