"""Task queue initialisation."""

from mealgate.tasks.queue import celery_app, get_task_queue, register_task

# Import job and handler definitions so they register when the package loads.
from mealgate.tasks import handlers as _handlers  # noqa: F401
from mealgate.tasks import jobs as _jobs  # noqa: F401

__all__ = ["get_task_queue", "register_task", "celery_app"]
