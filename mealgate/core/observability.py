"""Observability helpers for monitoring and tracing."""
from __future__ import annotations

import sentry_sdk
from fastapi import FastAPI
from prometheus_client import Counter
from prometheus_fastapi_instrumentator import Instrumentator

from mealgate.core.logging import get_logger
from mealgate.core.settings import get_settings

logger = get_logger(__name__)

ENTITLEMENT_DECISIONS = Counter(
    "mealgate_entitlement_decisions_total",
    "Metered-action admission decisions.",
    ("action", "result"),
)
BILLING_EVENTS = Counter(
    "mealgate_billing_events_total",
    "Billing webhook events by type and outcome.",
    ("event_type", "outcome"),
)
DEFERRED_TASKS = Counter(
    "mealgate_deferred_tasks_total",
    "Deferred task executions by type and outcome.",
    ("task_type", "outcome"),
)


def record_decision(action: str, result: str) -> None:
    ENTITLEMENT_DECISIONS.labels(action=action, result=result).inc()


def record_billing_event(event_type: str, outcome: str) -> None:
    BILLING_EVENTS.labels(event_type=event_type, outcome=outcome).inc()


def record_task(task_type: str, outcome: str) -> None:
    DEFERRED_TASKS.labels(task_type=task_type, outcome=outcome).inc()


def configure_observability(app: FastAPI) -> None:
    settings = get_settings()

    if settings.enable_prometheus:
        Instrumentator().instrument(app, metric_namespace=settings.metrics_namespace).expose(
            app, include_in_schema=False
        )

    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            traces_sample_rate=0.2,
            environment=settings.environment,
        )
        logger.info("sentry_initialised", environment=settings.environment)


__all__ = [
    "configure_observability",
    "record_billing_event",
    "record_decision",
    "record_task",
]
