"""
Replenishment Router — scheduler control and reorder queue endpoints.

  GET  /scheduler/status    current state + run statistics
  POST /scheduler/start     register the periodic trigger
  POST /scheduler/stop      deregister it (in-flight run finishes)
  POST /scheduler/run-now   fire-and-forget manual run
  PUT  /scheduler/config    schedule / batch size / enabled
  GET  /scheduler/logs      paginated run audit log
  GET  /scheduler/metrics   success rate and timings over N days
"""

from datetime import date, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db, get_scheduler
from core.config import get_settings
from replenishment import audit, queue
from replenishment.scheduler import ReplenishmentScheduler

router = APIRouter(prefix="/api/v1/replenishment/scheduler", tags=["replenishment"])
queue_router = APIRouter(prefix="/api/v1/replenishment/queue", tags=["replenishment"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class SchedulerStatus(BaseModel):
    running: bool
    currently_executing: bool
    enabled: bool
    accepting_triggers: bool
    schedule: str
    timezone: str
    batch_size: int
    last_run: datetime | None
    next_run: datetime | None
    total_runs: int
    successful_runs: int
    failed_runs: int


class RunNowRequest(BaseModel):
    user_id: UUID | None = None


class TriggerAck(BaseModel):
    accepted: bool
    busy: bool
    message: str
    triggered_at: datetime


class ConfigUpdate(BaseModel):
    schedule: str | None = None
    batch_size: int | None = Field(default=None, gt=0)
    enabled: bool | None = None


class SchedulerRunResponse(BaseModel):
    run_id: UUID
    job_name: str
    status: str
    items_processed: int
    items_eligible: int
    prs_generated: int
    alerts_created: int
    alerts_escalated: int
    error_message: str | None
    execution_time_ms: int | None
    started_at: datetime
    completed_at: datetime | None
    triggered_by: str
    triggered_by_user_id: UUID | None
    run_metadata: dict | None

    model_config = {"from_attributes": True}


class SchedulerRunPage(BaseModel):
    items: list[SchedulerRunResponse]
    total: int
    page: int
    limit: int


class QueueSummary(BaseModel):
    pending: int
    by_status: dict[str, int]


# ─── Scheduler endpoints ────────────────────────────────────────────────────


@router.get("/status", response_model=SchedulerStatus)
async def get_status(scheduler: ReplenishmentScheduler = Depends(get_scheduler)):
    return scheduler.get_status()


@router.post("/start", response_model=SchedulerStatus)
async def start_scheduler(scheduler: ReplenishmentScheduler = Depends(get_scheduler)):
    if not scheduler.enabled:
        raise HTTPException(status_code=409, detail="Scheduler is disabled; enable it via /config first")
    scheduler.start()
    return scheduler.get_status()


@router.post("/stop", response_model=SchedulerStatus)
async def stop_scheduler(scheduler: ReplenishmentScheduler = Depends(get_scheduler)):
    scheduler.stop()
    return scheduler.get_status()


@router.post("/run-now", response_model=TriggerAck, status_code=202)
async def run_now(
    body: RunNowRequest | None = None,
    scheduler: ReplenishmentScheduler = Depends(get_scheduler),
):
    ack = scheduler.trigger(user_id=body.user_id if body else None)
    if ack["busy"]:
        raise HTTPException(status_code=409, detail=ack["message"])
    if not ack["accepted"]:
        raise HTTPException(status_code=503, detail=ack["message"])
    return ack


@router.put("/config", response_model=SchedulerStatus)
async def update_config(
    body: ConfigUpdate,
    scheduler: ReplenishmentScheduler = Depends(get_scheduler),
):
    try:
        return scheduler.update_config(
            schedule=body.schedule,
            batch_size=body.batch_size,
            enabled=body.enabled,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("/logs", response_model=SchedulerRunPage)
async def list_logs(
    status: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=audit.MAX_PAGE_SIZE),
    db: AsyncSession = Depends(get_db),
):
    try:
        runs, total = await audit.list_runs(
            db, status=status, start_date=start_date, end_date=end_date, page=page, limit=limit
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"items": runs, "total": total, "page": page, "limit": limit}


@router.get("/metrics")
async def get_metrics(
    days: int = Query(7, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
):
    return await audit.get_metrics(db, days=days)


# ─── Queue endpoints ────────────────────────────────────────────────────────


@queue_router.get("/summary", response_model=QueueSummary)
async def queue_summary(db: AsyncSession = Depends(get_db)):
    return {
        "pending": await queue.pending_count(db),
        "by_status": await queue.status_counts(db),
    }


@queue_router.post("/retry-failed")
async def retry_failed(db: AsyncSession = Depends(get_db)):
    requeued = await queue.retry_failed_entries(db, max_retries=get_settings().replenishment_max_retries)
    return {"requeued": requeued}


@queue_router.post("/{queue_id}/cancel")
async def cancel_queue_entry(queue_id: UUID, db: AsyncSession = Depends(get_db)):
    try:
        entry = await queue.cancel_entry(db, queue_id)
    except ValueError as exc:
        raise HTTPException(status_code=404 if "not found" in str(exc) else 409, detail=str(exc))
    return {"queue_id": entry.queue_id, "status": entry.status}
