"""One batch run: mark, sync, enqueue, drain, clean up.

Each run is gated by the shared process state, recorded as a
:class:`BatchJob` and always closes the process state exactly once. Step
failures are recorded and the run moves on; only a tunnel failure (no more
remote data can be read) ends the run early.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List, Optional

from aularis.errors import TunnelError

from .collaborators import TenantDirectory
from .content import ContentSynchronizer, SyncResult
from .eligibility import EligibilityMarker
from .models import ALL_TENANTS, BatchJob, BatchStatus, TriggerType, WorkItem, utcnow
from .process_state import ProcessStateTracker
from .queue import WorkQueue
from .store import PipelineStore

logger = logging.getLogger(__name__)

DRAIN_PROGRESS_INTERVAL = 5.0


class BatchOrchestrator:
    """Runs the batch pipeline once per trigger."""

    def __init__(
        self,
        *,
        store: PipelineStore,
        tracker: ProcessStateTracker,
        marker: EligibilityMarker,
        queue: WorkQueue,
        synchronizer: ContentSynchronizer,
        directory: TenantDirectory,
        drain_timeout_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._tracker = tracker
        self._marker = marker
        self._queue = queue
        self._synchronizer = synchronizer
        self._directory = directory
        self._drain_timeout = drain_timeout_seconds
        self._clock = clock
        self._last_job: Optional[BatchJob] = None
        self._active_job: Optional[BatchJob] = None

    @property
    def last_job(self) -> Optional[BatchJob]:
        return self._last_job

    @property
    def running(self) -> bool:
        return self._active_job is not None

    async def run(
        self,
        trigger: TriggerType = TriggerType.MANUAL,
        tenant_id: Optional[str] = None,
        wait: bool = False,
    ) -> BatchJob:
        """Execute one run and return its finalised job record.

        Raises:
            RunConflictError: Another run is active; nothing is recorded
        """
        # Gate first: a rejected run leaves no trace
        self._tracker.init_process(trigger.value)

        job = BatchJob(
            job_id=uuid.uuid4().hex,
            trigger=trigger,
            scope=tenant_id or ALL_TENANTS,
            status=BatchStatus.RUNNING,
            started_at=self._clock(),
        )
        self._active_job = job
        logger.info(
            "Batch run started",
            extra={"job_id": job.job_id, "trigger": trigger.value, "scope": job.scope},
        )
        try:
            self._store.fail_orphaned_batch_jobs("Abandoned: superseded by a new run")
            self._store.insert_batch_job(job)
            self._progress(batch_job_id=job.job_id)
            await self._run_steps(job, tenant_id, wait)
        except TunnelError as exc:
            job.fatal_error = f"Tunnel failure: {exc}"
            self._record_error(job, job.fatal_error)
            logger.error(
                "Batch run aborted by tunnel failure",
                extra={"job_id": job.job_id, "error": str(exc)},
            )
        except Exception as exc:  # noqa: BLE001
            job.fatal_error = f"Unexpected error: {exc}"
            self._record_error(job, job.fatal_error)
            logger.exception("Batch run failed", extra={"job_id": job.job_id})
        finally:
            self._finalise(job)
        return job

    async def scan_pending(self, tenant_id: Optional[str] = None) -> BatchJob:
        """Queue-scan trigger: mark and enqueue without syncing remote content."""
        return await self.run(TriggerType.QUEUE_SCAN, tenant_id=tenant_id, wait=False)

    def recent_jobs(self, limit: int = 20) -> List[BatchJob]:
        return self._store.recent_batch_jobs(limit)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _run_steps(self, job: BatchJob, tenant_id: Optional[str], wait: bool) -> None:
        scan_only = job.trigger == TriggerType.QUEUE_SCAN

        self._progress(current_step="Marking eligible content")
        self._step(job, "mark", lambda: job.increment("marked", self._marker.mark_eligible(tenant_id)))

        if not scan_only:
            await self._sync(job, tenant_id)

        self._progress(current_step="Queueing analyses")
        await self._enqueue(job, tenant_id)

        if scan_only:
            self._step(job, "resubmit", lambda: self._queue.resubmit_due(tenant_id))
            return

        if wait:
            await self._drain(job)

        self._progress(current_step="Cleaning up queue")
        self._step(job, "cleanup", lambda: job.increment("cleaned", self._queue.cleanup()))

    def _step(self, job: BatchJob, name: str, action: Callable[[], object]) -> None:
        try:
            action()
        except TunnelError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Batch step failed", extra={"job_id": job.job_id, "step": name})
            self._record_error(job, f"{name}: {exc}")

    async def _sync(self, job: BatchJob, tenant_id: Optional[str]) -> None:
        if not self._synchronizer.enabled:
            logger.info("No content fetcher configured, skipping sync", extra={"job_id": job.job_id})
            return

        self._progress(current_step="Resolving tenants")
        try:
            tenants = await self._directory.list_tenants()
        except TunnelError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Tenant discovery failed", extra={"job_id": job.job_id})
            self._record_error(job, f"sync: tenant discovery failed: {exc}")
            return

        if tenant_id is not None:
            tenants = [tenant for tenant in tenants if tenant.id == tenant_id]
            if not tenants:
                self._record_error(job, f"sync: unknown tenant {tenant_id}")
                return

        job.increment("tenants_total", len(tenants))
        self._progress(total_tenants=len(tenants), processed_tenants=0, current_step="Syncing content")

        courses = {"total": 0, "processed": 0}

        def report_course(partial: SyncResult, base: Dict[str, int]) -> None:
            courses["total"] = base["total"] + partial.total_courses
            courses["processed"] = base["processed"] + partial.processed_courses
            self._progress(total_courses=courses["total"], processed_courses=courses["processed"])

        for index, tenant in enumerate(tenants, start=1):
            self._progress(current_tenant=tenant.id, current_step=f"Syncing tenant {tenant.id}")
            try:
                result = await self._synchronizer.sync_tenant(
                    tenant, on_course=lambda partial, base=dict(courses): report_course(partial, base)
                )
            except TunnelError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.exception(
                    "Tenant sync failed", extra={"job_id": job.job_id, "tenant_id": tenant.id}
                )
                self._record_error(job, f"sync {tenant.id}: {exc}")
            else:
                job.increment("tenants_synced")
                job.increment("courses_synced", result.courses)
                job.increment("items_synced", result.items)
                for message in result.errors:
                    self._record_error(job, f"sync: {message}")
                # Fresh content becomes eligible within the same run
                self._step(
                    job,
                    f"mark {tenant.id}",
                    lambda tenant=tenant: job.increment("marked", self._marker.mark_eligible(tenant.id)),
                )
            self._progress(processed_tenants=index)

    async def _enqueue(self, job: BatchJob, tenant_id: Optional[str]) -> None:
        try:
            pending = self._store.list_work_items(
                tenant_id,
                needs_analysis=True,
                exclude_failed=True,
                open_at=self._clock(),
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Failed to list eligible work items", extra={"job_id": job.job_id})
            self._record_error(job, f"enqueue: {exc}")
            return

        by_tenant: Dict[str, List[WorkItem]] = defaultdict(list)
        for item in pending:
            by_tenant[item.tenant_id].append(item)

        requested_by = f"batch:{job.job_id}"
        for tenant, items in by_tenant.items():
            try:
                result = await self._queue.enqueue(tenant, items, requested_by=requested_by)
            except Exception as exc:  # noqa: BLE001
                logger.exception(
                    "Enqueue failed", extra={"job_id": job.job_id, "tenant_id": tenant}
                )
                self._record_error(job, f"enqueue {tenant}: {exc}")
                continue
            job.increment("enqueued", result.added)
            job.increment("already_queued", result.existing)
            job.increment("enqueue_errors", result.errors)
            if result.errors:
                self._record_error(job, f"enqueue {tenant}: {result.errors} item(s) failed")

        self._progress(total_analyses=job.counters["enqueued"], processed_analyses=0)

    async def _drain(self, job: BatchJob) -> None:
        self._progress(current_step="Waiting for analyses")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._drain_timeout if self._drain_timeout else None
        requested_by = f"batch:{job.job_id}"

        while True:
            interval = DRAIN_PROGRESS_INTERVAL
            if deadline is not None:
                interval = min(interval, max(0.0, deadline - loop.time()))
            drained = await self._queue.drain(timeout=interval)
            self._observe_analyses(job, requested_by)
            if drained:
                return
            if deadline is not None and loop.time() >= deadline:
                self._record_error(
                    job, f"drain: analyses still running after {self._drain_timeout}s"
                )
                return

    def _observe_analyses(self, job: BatchJob, requested_by: str) -> None:
        try:
            counts = self._queue.count_requested_by(requested_by)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to count analyses", extra={"job_id": job.job_id})
            return
        job.counters["analyses_completed"] = counts.completed
        job.counters["analyses_failed"] = counts.failed
        self._progress(processed_analyses=counts.completed + counts.failed)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _finalise(self, job: BatchJob) -> None:
        now = self._clock()
        job.completed_at = now
        job.duration_seconds = round((now - job.started_at).total_seconds(), 3)
        job.status = BatchStatus.FAILED if job.fatal_error else BatchStatus.COMPLETED
        try:
            self._store.save_batch_job(job)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to persist batch job", extra={"job_id": job.job_id})

        success = job.fatal_error is None and not job.errors
        if job.fatal_error:
            message = f"Run failed: {job.fatal_error}"
        elif job.errors:
            message = f"Run completed with {len(job.errors)} error(s)"
        else:
            message = None
        try:
            self._tracker.finish_process(success, message)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to close process state", extra={"job_id": job.job_id})

        self._active_job = None
        self._last_job = job
        logger.info(
            "Batch run finished",
            extra={
                "job_id": job.job_id,
                "status": job.status.value,
                "duration_s": job.duration_seconds,
                "errors": len(job.errors),
                **job.counters,
            },
        )

    def _record_error(self, job: BatchJob, message: str) -> None:
        job.errors.append(message)
        try:
            self._tracker.add_error(message)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to record process error", extra={"job_id": job.job_id})

    def _progress(self, **partial) -> None:
        try:
            self._tracker.update_progress(**partial)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to update process state")
