"""
Scheduler run audit log.

One SchedulerRun row per replenishment execution: opened as ``running``,
closed as ``success`` (with counts) or ``failed`` (with message and stack).
Rows still ``running`` at process start belong to a crashed process and are
closed as ``cancelled``.
"""

import traceback
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

import structlog
from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import RUN_STATUSES, SchedulerRun

logger = structlog.get_logger()

JOB_NAME = "reorder-check"
MAX_PAGE_SIZE = 200


@dataclass
class RunCounts:
    items_processed: int = 0
    items_eligible: int = 0
    prs_generated: int = 0
    alerts_created: int = 0
    alerts_escalated: int = 0


async def start_run(
    db: AsyncSession,
    triggered_by: str = "scheduler",
    user_id: uuid.UUID | None = None,
    job_name: str = JOB_NAME,
) -> SchedulerRun:
    run = SchedulerRun(
        job_name=job_name,
        status="running",
        triggered_by=triggered_by,
        triggered_by_user_id=user_id,
        started_at=datetime.utcnow(),
        run_metadata={},
    )
    db.add(run)
    await db.commit()
    return run


def _elapsed_ms(run: SchedulerRun, finished: datetime) -> int:
    return int((finished - run.started_at).total_seconds() * 1000)


async def complete_run(
    db: AsyncSession,
    run_id: uuid.UUID,
    counts: RunCounts,
    metadata: dict | None = None,
) -> SchedulerRun:
    run = await db.get(SchedulerRun, run_id)
    if run is None:
        raise ValueError(f"Scheduler run {run_id} not found")

    finished = datetime.utcnow()
    run.status = "success"
    run.items_processed = counts.items_processed
    run.items_eligible = counts.items_eligible
    run.prs_generated = counts.prs_generated
    run.alerts_created = counts.alerts_created
    run.alerts_escalated = counts.alerts_escalated
    run.completed_at = finished
    run.execution_time_ms = _elapsed_ms(run, finished)
    run.run_metadata = metadata or {}
    await db.commit()
    return run


async def fail_run(
    db: AsyncSession,
    run_id: uuid.UUID,
    error: BaseException,
    counts: RunCounts | None = None,
    metadata: dict | None = None,
) -> SchedulerRun:
    run = await db.get(SchedulerRun, run_id)
    if run is None:
        raise ValueError(f"Scheduler run {run_id} not found")

    finished = datetime.utcnow()
    run.status = "failed"
    run.error_message = str(error) or type(error).__name__
    run.error_stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    run.completed_at = finished
    run.execution_time_ms = _elapsed_ms(run, finished)
    if counts is not None:
        run.items_processed = counts.items_processed
        run.items_eligible = counts.items_eligible
        run.prs_generated = counts.prs_generated
        run.alerts_created = counts.alerts_created
        run.alerts_escalated = counts.alerts_escalated
    if metadata:
        run.run_metadata = metadata
    await db.commit()
    return run


async def recover_interrupted_runs(db: AsyncSession) -> int:
    """Close runs a previous process left in ``running``."""
    result = await db.execute(
        update(SchedulerRun)
        .where(SchedulerRun.status == "running")
        .values(
            status="cancelled",
            completed_at=datetime.utcnow(),
            error_message="Interrupted: process stopped before the run finished",
        )
    )
    await db.commit()
    if result.rowcount:
        logger.warning("scheduler.interrupted_runs_recovered", count=result.rowcount)
    return result.rowcount


async def list_runs(
    db: AsyncSession,
    status: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    page: int = 1,
    limit: int = 20,
    job_name: str = JOB_NAME,
) -> tuple[list[SchedulerRun], int]:
    """Page of runs, newest first, plus the total matching count."""
    if status is not None and status not in RUN_STATUSES:
        raise ValueError(f"Unknown run status: {status!r}")
    page = max(page, 1)
    limit = max(1, min(limit, MAX_PAGE_SIZE))

    filters = [SchedulerRun.job_name == job_name]
    if status:
        filters.append(SchedulerRun.status == status)
    if start_date:
        filters.append(SchedulerRun.started_at >= datetime.combine(start_date, time.min))
    if end_date:
        filters.append(SchedulerRun.started_at < datetime.combine(end_date + timedelta(days=1), time.min))

    total = (await db.execute(select(func.count(SchedulerRun.run_id)).where(*filters))).scalar_one()
    result = await db.execute(
        select(SchedulerRun)
        .where(*filters)
        .order_by(SchedulerRun.started_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def get_metrics(db: AsyncSession, days: int = 7, job_name: str = JOB_NAME) -> dict:
    """Success rate, average execution time and totals over the trailing window."""
    since = datetime.utcnow() - timedelta(days=days)
    result = await db.execute(
        select(
            func.count(SchedulerRun.run_id),
            func.sum(case((SchedulerRun.status == "success", 1), else_=0)),
            func.sum(case((SchedulerRun.status == "failed", 1), else_=0)),
            func.avg(case((SchedulerRun.status == "success", SchedulerRun.execution_time_ms), else_=None)),
            func.coalesce(func.sum(SchedulerRun.items_processed), 0),
            func.coalesce(func.sum(SchedulerRun.prs_generated), 0),
            func.coalesce(func.sum(SchedulerRun.alerts_escalated), 0),
        ).where(SchedulerRun.job_name == job_name, SchedulerRun.started_at >= since)
    )
    total, successful, failed, avg_ms, items, prs, escalated = result.one()
    total = total or 0
    successful = successful or 0

    return {
        "period_days": days,
        "total_runs": total,
        "successful_runs": successful,
        "failed_runs": failed or 0,
        "success_rate": round(successful / total * 100, 2) if total else 0.0,
        "avg_execution_time_ms": round(float(avg_ms), 2) if avg_ms is not None else 0.0,
        "total_items_processed": int(items),
        "total_prs_generated": int(prs),
        "total_alerts_escalated": int(escalated),
    }
