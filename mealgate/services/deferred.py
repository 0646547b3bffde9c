"""Durable deferred tasks with an exactly-once claiming sweep."""
from __future__ import annotations

import socket
import uuid
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from mealgate.core import models
from mealgate.core.database import session_scope
from mealgate.core.errors import UnknownTaskType
from mealgate.core.logging import get_logger
from mealgate.core.observability import record_task
from mealgate.core.settings import Settings, get_settings
from mealgate.core.timeutils import as_naive_utc, utcnow
from mealgate.services.notifications import Notifier

logger = get_logger(__name__)

TASK_EXPIRE_GRANT = "expire_grant"
TASK_RENEWAL_REMINDER = "renewal_reminder"
TASK_GRACE_EXPIRY = "grace_expiry"

SessionFactory = Callable[[], AbstractContextManager[Session]]


@dataclass(slots=True)
class TaskContext:
    now: datetime
    queue: "DeferredTaskQueue"

    @property
    def settings(self) -> Settings:
        return self.queue.settings

    @property
    def notifier(self) -> Notifier:
        return self.queue.notifier


TaskHandler = Callable[[Session, models.DeferredTask, TaskContext], None]
TASK_HANDLERS: dict[str, TaskHandler] = {}


def register_handler(task_type: str) -> Callable[[TaskHandler], TaskHandler]:
    """Decorator binding a handler to a deferred task type."""

    def decorator(func: TaskHandler) -> TaskHandler:
        TASK_HANDLERS[task_type] = func
        return func

    return decorator


@dataclass(slots=True)
class SweepReport:
    claimed: int = 0
    succeeded: int = 0
    retried: int = 0
    dead_lettered: int = 0
    skipped: int = 0
    reclaimed: int = 0
    task_ids: list[uuid.UUID] = field(default_factory=list)


class _LeaseLost(Exception):
    """The claim on a task was taken over before it could be completed."""


class DeferredTaskQueue:
    """Schedules future effects and executes due ones exactly once."""

    def __init__(
        self,
        settings: Settings | None = None,
        session_factory: SessionFactory | None = None,
        notifier: Notifier | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session = session_factory or session_scope
        self.notifier = notifier or Notifier(self.settings)
        self.worker_id = worker_id or f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"

    # ------------------------------------------------------------------
    def schedule(
        self,
        db: Session,
        task_type: str,
        user_id: str | None,
        payload: dict[str, Any],
        scheduled_for: datetime,
    ) -> uuid.UUID:
        """Persist a task in the caller's transaction and return its id."""
        task = models.DeferredTask(
            id=uuid.uuid4(),
            task_type=task_type,
            user_id=user_id,
            payload=payload,
            scheduled_for=as_naive_utc(scheduled_for),
            status=models.TASK_PENDING,
            attempts=0,
        )
        db.add(task)
        db.flush()
        logger.info(
            "task_scheduled",
            task_id=str(task.id),
            task_type=task_type,
            user_id=user_id,
            scheduled_for=task.scheduled_for.isoformat(),
        )
        return task.id

    def list_tasks(
        self, db: Session, status: str | None = None, limit: int = 100
    ) -> list[models.DeferredTask]:
        query = select(models.DeferredTask).order_by(models.DeferredTask.scheduled_for.asc())
        if status:
            query = query.where(models.DeferredTask.status == status)
        return list(db.execute(query.limit(limit)).scalars())

    # ------------------------------------------------------------------
    def claim(self, task_id: uuid.UUID, now: datetime) -> bool:
        """Move a task from pending to processing; only one caller can win."""
        with self._session() as db:
            result = db.execute(
                update(models.DeferredTask)
                .where(models.DeferredTask.id == task_id)
                .where(models.DeferredTask.status == models.TASK_PENDING)
                .values(
                    status=models.TASK_PROCESSING,
                    attempts=models.DeferredTask.attempts + 1,
                    claimed_by=self.worker_id,
                    claimed_at=now,
                )
            )
            return result.rowcount == 1

    def reclaim_stale(self, now: datetime) -> int:
        """Return tasks whose processing lease expired to the pending state."""
        cutoff = now - timedelta(seconds=self.settings.task_lease_seconds)
        with self._session() as db:
            result = db.execute(
                update(models.DeferredTask)
                .where(models.DeferredTask.status == models.TASK_PROCESSING)
                .where(models.DeferredTask.claimed_at < cutoff)
                .values(status=models.TASK_PENDING, claimed_by=None, claimed_at=None)
            )
        if result.rowcount:
            logger.warning("tasks_reclaimed", count=result.rowcount, cutoff=cutoff.isoformat())
        return result.rowcount

    def sweep(self, now: datetime | None = None) -> SweepReport:
        """Claim and run every due task once; safe to run from many workers."""
        import mealgate.tasks.handlers  # noqa: F401 registers the built-in handlers

        now = as_naive_utc(now) if now else utcnow()
        report = SweepReport()
        report.reclaimed = self.reclaim_stale(now)

        with self._session() as db:
            due_ids = list(
                db.execute(
                    select(models.DeferredTask.id)
                    .where(models.DeferredTask.status == models.TASK_PENDING)
                    .where(models.DeferredTask.scheduled_for <= now)
                    .order_by(models.DeferredTask.scheduled_for.asc())
                    .limit(self.settings.task_sweep_batch_size)
                ).scalars()
            )

        for task_id in due_ids:
            if not self.claim(task_id, now):
                report.skipped += 1
                continue
            report.claimed += 1
            report.task_ids.append(task_id)
            self._execute(task_id, now, report)

        if report.claimed or report.reclaimed:
            logger.info(
                "sweep_completed",
                worker=self.worker_id,
                claimed=report.claimed,
                succeeded=report.succeeded,
                retried=report.retried,
                dead_lettered=report.dead_lettered,
                skipped=report.skipped,
            )
        return report

    # ------------------------------------------------------------------
    def _execute(self, task_id: uuid.UUID, now: datetime, report: SweepReport) -> None:
        context = TaskContext(now=now, queue=self)
        task_type = "unknown"
        try:
            with self._session() as db:
                task = db.get(models.DeferredTask, task_id)
                task_type = task.task_type
                handler = TASK_HANDLERS.get(task.task_type)
                if handler is None:
                    raise UnknownTaskType(f"No handler for task type '{task.task_type}'")
                handler(db, task, context)
                # The effect and the completion commit together or not at all.
                done = db.execute(
                    update(models.DeferredTask)
                    .where(models.DeferredTask.id == task_id)
                    .where(models.DeferredTask.status == models.TASK_PROCESSING)
                    .where(models.DeferredTask.claimed_by == self.worker_id)
                    .values(status=models.TASK_DONE, completed_at=now, last_error=None)
                )
                if done.rowcount != 1:
                    raise _LeaseLost(str(task_id))
        except _LeaseLost:
            logger.warning("task_lease_lost", task_id=str(task_id), worker=self.worker_id)
            report.skipped += 1
            return
        except Exception as exc:
            self._record_failure(task_id, task_type, now, exc, report)
            return

        report.succeeded += 1
        record_task(task_type, "done")
        logger.info("task_completed", task_id=str(task_id), task_type=task_type)

    def _record_failure(
        self,
        task_id: uuid.UUID,
        task_type: str,
        now: datetime,
        exc: Exception,
        report: SweepReport,
    ) -> None:
        error = f"{exc.__class__.__name__}: {exc}"
        with self._session() as db:
            task = db.get(models.DeferredTask, task_id)
            if task is None or task.status != models.TASK_PROCESSING or task.claimed_by != self.worker_id:
                report.skipped += 1
                return
            task.last_error = error
            task.claimed_by = None
            if task.attempts >= self.settings.task_max_attempts:
                task.status = models.TASK_FAILED
                task.completed_at = now
                dead_lettered = True
            else:
                backoff = self.settings.task_retry_backoff_seconds * (2 ** (task.attempts - 1))
                task.status = models.TASK_PENDING
                task.scheduled_for = now + timedelta(seconds=backoff)
                dead_lettered = False
            attempts = task.attempts
            db.add(task)

        if dead_lettered:
            report.dead_lettered += 1
            record_task(task_type, "failed")
            logger.error(
                "task_dead_lettered",
                task_id=str(task_id),
                task_type=task_type,
                attempts=attempts,
                error=error,
            )
            self.notifier.notify_operator(
                subject=f"Deferred task {task_type} failed",
                body=f"Task {task_id} failed after {attempts} attempts: {error}",
            )
        else:
            report.retried += 1
            record_task(task_type, "retry")
            logger.warning(
                "task_retry_scheduled",
                task_id=str(task_id),
                task_type=task_type,
                attempts=attempts,
                error=error,
            )


__all__ = [
    "DeferredTaskQueue",
    "SweepReport",
    "TASK_EXPIRE_GRANT",
    "TASK_GRACE_EXPIRY",
    "TASK_HANDLERS",
    "TASK_RENEWAL_REMINDER",
    "TaskContext",
    "register_handler",
]
