"""Registered background jobs."""
from __future__ import annotations

import time
from dataclasses import asdict
from typing import Any

from mealgate.core.database import session_scope
from mealgate.core.logging import get_logger
from mealgate.core.settings import get_settings
from mealgate.core.timeutils import utcnow
from mealgate.services.deferred import DeferredTaskQueue
from mealgate.services.usage import UsageLedger
from mealgate.tasks.queue import register_task

logger = get_logger(__name__)


@register_task("mealgate.sweep_deferred")
def sweep_deferred_job() -> dict[str, Any]:
    report = DeferredTaskQueue().sweep(utcnow())
    summary = asdict(report)
    summary["task_ids"] = [str(task_id) for task_id in report.task_ids]
    return summary


@register_task("mealgate.prune_usage")
def prune_usage_job() -> int:
    with session_scope() as session:
        return UsageLedger().prune(session, utcnow())


def run_sweep_loop(interval: float | None = None, iterations: int | None = None) -> None:
    """Poll for due deferred tasks forever (or ``iterations`` times)."""
    interval = interval if interval is not None else get_settings().task_sweep_interval_seconds
    queue = DeferredTaskQueue()
    logger.info("sweeper_started", worker=queue.worker_id, interval=interval)
    completed = 0
    while iterations is None or completed < iterations:
        try:
            queue.sweep(utcnow())
        except Exception as exc:
            # A failed pass is retried on the next tick; claims keep it safe.
            logger.error("sweep_failed", worker=queue.worker_id, error=str(exc))
        completed += 1
        if iterations is None or completed < iterations:
            time.sleep(interval)


__all__ = ["prune_usage_job", "run_sweep_loop", "sweep_deferred_job"]
