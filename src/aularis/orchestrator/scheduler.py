"""Timer triggers for batch runs, leveraging APScheduler."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from croniter import croniter

from aularis.errors import ConfigurationError, RunConflictError

from .batch import BatchOrchestrator
from .models import BatchJob, TriggerType, to_iso, utcnow
from .process_state import ProcessStateTracker
from .queue import WorkQueue

logger = logging.getLogger(__name__)

DEFAULT_CRON_EXPRESSIONS = ("0 8 * * *", "0 16 * * *")
DEFAULT_TIMEZONE = "America/Mexico_City"
CLEANUP_JOB_ID = "queue-cleanup"
HEALTH_JOB_ID = "health-check"


def upcoming_fire_times(
    expression: str,
    timezone: str = DEFAULT_TIMEZONE,
    count: int = 3,
    *,
    start: Optional[datetime] = None,
) -> List[datetime]:
    """Next ``count`` fire times of a cron expression in ``timezone``."""
    if not croniter.is_valid(expression):
        raise ConfigurationError(f"Invalid cron expression: {expression}")
    base = (start or utcnow()).astimezone(ZoneInfo(timezone))
    iterator = croniter(expression, base)
    return [iterator.get_next(datetime) for _ in range(count)]


class BatchScheduler:
    """Arms cron triggers for batch runs plus daily cleanup and hourly health logs.

    Timer-fired runs are started as their own tasks so that stopping the
    scheduler never interrupts a run already in flight.
    """

    def __init__(
        self,
        orchestrator: BatchOrchestrator,
        queue: WorkQueue,
        tracker: ProcessStateTracker,
        *,
        cron_expressions: Sequence[str] = DEFAULT_CRON_EXPRESSIONS,
        timezone: str = DEFAULT_TIMEZONE,
        cleanup_cron: str = "0 2 * * *",
        health_check_cron: str = "0 * * * *",
        wait_for_drain: bool = True,
        scheduler_factory: Callable[..., AsyncIOScheduler] = AsyncIOScheduler,
    ) -> None:
        self._orchestrator = orchestrator
        self._queue = queue
        self._tracker = tracker
        self._cron_expressions = list(cron_expressions)
        self._timezone = timezone
        self._cleanup_cron = cleanup_cron
        self._health_check_cron = health_check_cron
        self._wait_for_drain = wait_for_drain
        self._scheduler_factory = scheduler_factory
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._run_task: Optional[asyncio.Task] = None
        self._last_run: Optional[datetime] = None
        self._last_result: Optional[Dict[str, Any]] = None

    @property
    def initialized(self) -> bool:
        return self._scheduler is not None

    @property
    def run_job_ids(self) -> List[str]:
        return [f"batch-run-{index}" for index in range(len(self._cron_expressions))]

    def start(self) -> None:
        """Arm all triggers. Calling it again while armed is a no-op."""
        if self._scheduler is not None:
            return
        for expression in [*self._cron_expressions, self._cleanup_cron, self._health_check_cron]:
            if not croniter.is_valid(expression):
                raise ConfigurationError(f"Invalid cron expression: {expression}")

        scheduler = self._scheduler_factory(timezone=self._timezone)
        for job_id, expression in zip(self.run_job_ids, self._cron_expressions):
            scheduler.add_job(
                self._timer_run,
                trigger=CronTrigger.from_crontab(expression, timezone=self._timezone),
                id=job_id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        scheduler.add_job(
            self._cleanup,
            trigger=CronTrigger.from_crontab(self._cleanup_cron, timezone=self._timezone),
            id=CLEANUP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.add_job(
            self._health_check,
            trigger=CronTrigger.from_crontab(self._health_check_cron, timezone=self._timezone),
            id=HEALTH_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "Batch scheduler started",
            extra={"cron_expressions": self._cron_expressions, "timezone": self._timezone},
        )

    def stop(self) -> None:
        """Disarm triggers; a run already in progress keeps going."""
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Batch scheduler stopped")

    def restart(self) -> None:
        self.stop()
        self.start()

    async def trigger_manual_update(
        self, tenant_id: Optional[str] = None, wait: bool = True
    ) -> BatchJob:
        """Run a batch now.

        Raises:
            RunConflictError: Another run is active
        """
        logger.info("Manual update triggered", extra={"tenant_id": tenant_id, "wait": wait})
        job = await self._orchestrator.run(TriggerType.MANUAL, tenant_id=tenant_id, wait=wait)
        self._remember(job)
        return job

    async def wait_for_run(self) -> None:
        """Await the timer-fired run started by this scheduler, if any."""
        task = self._run_task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def validate_jobs(self) -> Dict[str, Any]:
        jobs = self._jobs()
        expected = set(self.run_job_ids) | {CLEANUP_JOB_ID, HEALTH_JOB_ID}
        present = {job["id"] for job in jobs}
        return {
            "valid": self.initialized and expected <= present,
            "jobs": jobs,
            "last_run": to_iso(self._last_run),
        }

    def get_status(self) -> Dict[str, Any]:
        return {
            "initialized": self.initialized,
            "next_fire_times": {job["id"]: job["next_run_time"] for job in self._jobs()},
            "last_run": to_iso(self._last_run),
            "last_result": self._last_result,
            "running": self._orchestrator.running,
        }

    def _jobs(self) -> List[Dict[str, Any]]:
        if self._scheduler is None:
            return []
        return [
            {"id": job.id, "next_run_time": to_iso(job.next_run_time)}
            for job in self._scheduler.get_jobs()
        ]

    # ------------------------------------------------------------------
    # Timer callbacks
    # ------------------------------------------------------------------

    async def _timer_run(self) -> None:
        if self._run_task is not None and not self._run_task.done():
            logger.warning("Previous timer run still in progress, skipping")
            return
        self._run_task = asyncio.get_running_loop().create_task(self._execute_timer_run())

    async def _execute_timer_run(self) -> None:
        try:
            job = await self._orchestrator.run(TriggerType.SCHEDULED, wait=self._wait_for_drain)
        except RunConflictError as exc:
            logger.warning(
                "Scheduled run skipped: another run is active",
                extra={"active_since": exc.active_since, "process_type": exc.process_type},
            )
            return
        except Exception:  # noqa: BLE001
            logger.exception("Scheduled run failed")
            return
        self._remember(job)

    async def _cleanup(self) -> None:
        try:
            self._queue.cleanup()
        except Exception:  # noqa: BLE001
            logger.exception("Scheduled queue cleanup failed")

    async def _health_check(self) -> None:
        report = self._tracker.report()
        counts = self._queue.get_status()
        logger.info(
            "Health check",
            extra={
                "scheduler_initialized": self.initialized,
                "process_active": report["is_active"],
                "current_step": report["current_step"],
                "queue": counts.to_dict(),
                "last_run": to_iso(self._last_run),
            },
        )

    def _remember(self, job: BatchJob) -> None:
        self._last_run = job.started_at
        self._last_result = {
            "job_id": job.job_id,
            "status": job.status.value,
            "errors": len(job.errors),
            "duration_seconds": job.duration_seconds,
        }
