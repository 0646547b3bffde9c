"""Operational endpoints for deferred tasks."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from mealgate.api import schemas
from mealgate.api.dependencies.auth import require_service_token
from mealgate.api.dependencies.database import get_db
from mealgate.api.dependencies.services import get_task_queue
from mealgate.services.deferred import DeferredTaskQueue

router = APIRouter(prefix="/api/v1/admin", tags=["admin"], dependencies=[Depends(require_service_token)])


@router.get("/tasks", response_model=list[schemas.DeferredTaskResponse])
def list_tasks(
    status: str | None = Query(default=None, pattern="^(pending|processing|done|failed)$"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    queue: DeferredTaskQueue = Depends(get_task_queue),
) -> list[schemas.DeferredTaskResponse]:
    return [schemas.DeferredTaskResponse.model_validate(task) for task in queue.list_tasks(db, status, limit)]


@router.post("/tasks/sweep", response_model=schemas.SweepResponse)
def sweep(queue: DeferredTaskQueue = Depends(get_task_queue)) -> schemas.SweepResponse:
    report = queue.sweep()
    return schemas.SweepResponse(
        claimed=report.claimed,
        succeeded=report.succeeded,
        retried=report.retried,
        dead_lettered=report.dead_lettered,
        skipped=report.skipped,
        reclaimed=report.reclaimed,
    )


__all__ = ["router"]
