"""
Replenishment Scheduler — periodic and manual reorder cycles.

One cycle (``run_now``):
  Phase 1: ReorderDecisionEngine.scan        → fill the reorder queue
  Phase 2: RequisitionGenerator.process_batch → PRs + reorder alerts
  Phase 3: AlertEscalator.process_escalations → escalate stale alerts
Each cycle is audited as a SchedulerRun row.

Only one cycle runs at a time per process: ``run_now`` returns a busy
result while another cycle is in flight. The guard is in-process memory,
so a deployment must run exactly one scheduler instance.

The periodic trigger is an asyncio task that sleeps until the next cron
occurrence and launches each cycle as its own task, so ``stop()`` only
cancels future ticks and never interrupts a cycle in progress.
"""

import asyncio
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

import structlog
from celery.schedules import crontab
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alerts.escalation import AlertEscalator
from alerts.notify import LoggingNotifier, NotificationHook
from core.config import Settings, get_settings
from core.cron import next_run_time, parse_cron, seconds_until_next
from replenishment.audit import RunCounts, complete_run, fail_run, start_run
from replenishment.decision import ReorderDecisionEngine
from replenishment.requisitions import RequisitionGenerator

logger = structlog.get_logger()


@dataclass
class RunResult:
    status: str  # success | failed | busy | rejected
    run_id: uuid.UUID | None = None
    triggered_by: str = "scheduler"
    counts: RunCounts = field(default_factory=RunCounts)
    errors: list[dict] = field(default_factory=list)
    execution_time_ms: int = 0
    message: str = ""

    @property
    def busy(self) -> bool:
        return self.status == "busy"


@dataclass
class SchedulerStats:
    last_run: datetime | None = None
    next_run: datetime | None = None
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0


class ReplenishmentScheduler:
    """Single-flight replenishment scheduler."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        notifier: NotificationHook | None = None,
    ):
        settings = settings or get_settings()
        self.session_factory = session_factory
        self.notifier = notifier or LoggingNotifier()
        self.timezone = settings.scheduler_timezone
        self.enabled = settings.replenishment_enabled
        self.batch_size = settings.replenishment_batch_size
        self.max_retries = settings.replenishment_max_retries
        self.window_days = settings.consumption_window_days
        self.shutdown_timeout = settings.scheduler_shutdown_timeout_seconds
        self.escalation_threshold_hours = settings.escalation_threshold_hours
        self.critical_escalation_threshold_hours = settings.critical_escalation_threshold_hours
        self.schedule = settings.replenishment_schedule
        self._cron: crontab = parse_cron(self.schedule, self.timezone)

        self.stats = SchedulerStats()
        self._is_running = False
        self._accepting = True
        self._idle = asyncio.Event()
        self._idle.set()
        self._ticker: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

    # ─── State ──────────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        """True while a cycle is executing."""
        return self._is_running

    @property
    def is_started(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    def get_status(self) -> dict:
        return {
            "running": self.is_started,
            "currently_executing": self._is_running,
            "enabled": self.enabled,
            "accepting_triggers": self._accepting,
            "schedule": self.schedule,
            "timezone": self.timezone,
            "batch_size": self.batch_size,
            "last_run": self.stats.last_run,
            "next_run": self.stats.next_run if self.is_started else None,
            "total_runs": self.stats.total_runs,
            "successful_runs": self.stats.successful_runs,
            "failed_runs": self.stats.failed_runs,
        }

    # ─── Periodic trigger ───────────────────────────────────────────────

    def start(self) -> bool:
        """Register the periodic trigger. Returns True if it was started."""
        if self.is_started:
            logger.info("scheduler.already_started")
            return False
        if not self._accepting:
            logger.warning("scheduler.start_rejected", reason="shut down")
            return False
        if not self.enabled:
            logger.info("scheduler.disabled")
            return False

        self._ticker = asyncio.get_running_loop().create_task(self._tick_loop(), name="replenishment-ticker")
        self.stats.next_run = next_run_time(self._cron)
        logger.info("scheduler.started", schedule=self.schedule, timezone=self.timezone, next_run=self.stats.next_run)
        return True

    def stop(self) -> bool:
        """Deregister the periodic trigger. An in-flight cycle keeps running."""
        if not self.is_started:
            self._ticker = None
            return False
        self._ticker.cancel()
        self._ticker = None
        self.stats.next_run = None
        logger.info("scheduler.stopped")
        return True

    async def _tick_loop(self) -> None:
        while True:
            try:
                delay = seconds_until_next(self._cron)
                self.stats.next_run = next_run_time(self._cron)
            except Exception:
                logger.error("scheduler.next_run_failed", schedule=self.schedule, exc_info=True)
                delay = 60.0
                await asyncio.sleep(delay)
                continue

            await asyncio.sleep(delay)
            if not self._accepting:
                return
            if self._is_running:
                logger.warning("scheduler.tick_skipped", reason="previous run still in progress")
            else:
                self._spawn("scheduler", None)
            # Let the clock pass the occurrence just fired before recomputing.
            await asyncio.sleep(1)

    def _spawn(self, triggered_by: str, user_id: uuid.UUID | None) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._run(triggered_by, user_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ─── Manual trigger ─────────────────────────────────────────────────

    def trigger(self, user_id: uuid.UUID | None = None) -> dict:
        """Fire-and-forget manual run; returns an acknowledgement."""
        ack = {"accepted": False, "busy": False, "triggered_at": datetime.now(timezone.utc)}
        if not self._accepting:
            ack["message"] = "Scheduler is shutting down"
            return ack
        if self._is_running or any(not task.done() for task in self._tasks):
            ack["busy"] = True
            ack["message"] = "A replenishment run is already in progress"
            return ack

        self._spawn("manual", user_id)
        ack["accepted"] = True
        ack["message"] = "Replenishment run started"
        logger.info("scheduler.manual_trigger", user_id=str(user_id) if user_id else None)
        return ack

    # ─── Execution ──────────────────────────────────────────────────────

    async def run_now(self, triggered_by: str = "manual", user_id: uuid.UUID | None = None) -> RunResult:
        """Run one full cycle, or return immediately if one is in flight."""
        if not self._accepting:
            return RunResult(status="rejected", triggered_by=triggered_by, message="Scheduler is shut down")
        return await self._run(triggered_by, user_id)

    async def _run(self, triggered_by: str, user_id: uuid.UUID | None) -> RunResult:
        if self._is_running:
            logger.warning("scheduler.busy", triggered_by=triggered_by)
            return RunResult(status="busy", triggered_by=triggered_by, message="Run already in progress")

        # Set before the first await so concurrent callers see the flag.
        self._is_running = True
        self._idle.clear()
        started = time.monotonic()
        result = RunResult(status="failed", triggered_by=triggered_by)

        try:
            async with self.session_factory() as db:
                run = await start_run(db, triggered_by=triggered_by, user_id=user_id)
                result.run_id = run.run_id

            with structlog.contextvars.bound_contextvars(run_id=str(result.run_id)):
                logger.info("scheduler.run_started", triggered_by=triggered_by)
                try:
                    await self._execute_phases(result)
                except Exception as exc:
                    await self._record_failure(result, exc)
                else:
                    result.status = "success"
                    async with self.session_factory() as db:
                        await complete_run(db, result.run_id, result.counts, self._run_metadata(result))
                    logger.info("scheduler.run_complete", **asdict(result.counts), errors=len(result.errors))
        except Exception as exc:
            # Could not open or close the audit row.
            result.status = "failed"
            result.message = str(exc)
            logger.error("scheduler.run_audit_failed", error=str(exc), exc_info=True)
        finally:
            result.execution_time_ms = int((time.monotonic() - started) * 1000)
            self.stats.last_run = datetime.now(timezone.utc)
            self.stats.total_runs += 1
            if result.status == "success":
                self.stats.successful_runs += 1
            else:
                self.stats.failed_runs += 1
            self._is_running = False
            self._idle.set()

        return result

    async def _execute_phases(self, result: RunResult) -> None:
        async with self.session_factory() as db:
            scan = await ReorderDecisionEngine(db, window_days=self.window_days).scan(run_id=result.run_id)
        result.counts.items_processed = scan.items_processed
        result.counts.items_eligible = scan.items_eligible
        result.errors.extend(scan.errors)

        async with self.session_factory() as db:
            generation = await RequisitionGenerator(db, max_retries=self.max_retries).process_batch(self.batch_size)
        result.counts.prs_generated = generation.successful
        result.counts.alerts_created = generation.alerts_created
        result.errors.extend(generation.errors)

        async with self.session_factory() as db:
            escalator = AlertEscalator(
                db,
                self.notifier,
                threshold_hours=self.escalation_threshold_hours,
                critical_threshold_hours=self.critical_escalation_threshold_hours,
            )
            escalation = await escalator.process_escalations()
        result.counts.alerts_escalated = escalation.escalated
        result.errors.extend(escalation.errors)

    async def _record_failure(self, result: RunResult, exc: Exception) -> None:
        result.status = "failed"
        result.message = str(exc)
        logger.error("scheduler.run_failed", error=str(exc), exc_info=True)
        async with self.session_factory() as db:
            await fail_run(db, result.run_id, exc, result.counts, self._run_metadata(result))

    @staticmethod
    def _run_metadata(result: RunResult) -> dict:
        return {"errors": result.errors, "error_count": len(result.errors)}

    # ─── Configuration & lifecycle ──────────────────────────────────────

    def update_config(
        self,
        schedule: str | None = None,
        batch_size: int | None = None,
        enabled: bool | None = None,
    ) -> dict:
        """Apply new settings; the periodic trigger is restarted as needed."""
        new_cron = parse_cron(schedule, self.timezone) if schedule is not None else None
        if batch_size is not None and batch_size < 1:
            raise ValueError("batch_size must be a positive integer")

        if batch_size is not None:
            self.batch_size = batch_size

        if new_cron is not None and schedule.strip() != self.schedule:
            self.schedule = schedule.strip()
            self._cron = new_cron
            if self.is_started:
                self.stop()
                self.start()

        if enabled is not None and enabled != self.enabled:
            self.enabled = enabled
            if enabled:
                self.start()
            else:
                self.stop()

        logger.info("scheduler.config_updated", schedule=self.schedule, batch_size=self.batch_size, enabled=self.enabled)
        return self.get_status()

    async def shutdown(self, timeout: float | None = None) -> bool:
        """Stop accepting triggers and wait for cycles already accepted.

        Returns False if a cycle was still running when the timeout hit.
        """
        self._accepting = False
        self.stop()
        timeout = self.shutdown_timeout if timeout is None else timeout

        pending = [task for task in self._tasks if not task.done()]
        if self._is_running or pending:
            logger.info("scheduler.waiting_for_run", timeout_seconds=timeout)
            try:
                await asyncio.wait_for(self._drain(pending), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("scheduler.shutdown_timeout", timeout_seconds=timeout)
                return False

        logger.info("scheduler.shutdown_complete")
        return True

    async def _drain(self, pending: list[asyncio.Task]) -> None:
        if pending:
            await asyncio.gather(*(asyncio.shield(task) for task in pending), return_exceptions=True)
        await self._idle.wait()
