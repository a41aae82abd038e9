"""Durable, deduplicated analysis queue with an asyncio consumer pool.

Entries live in the ``queue_entries`` table, one row per work item key.
Every transition that could race (re-queueing, claiming) is a single guarded
SQL statement, so two processes sharing the database never run the same
item twice at once.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from aularis.errors import CollaboratorError

from .collaborators import AnalysisExecutor, AnalysisOutcome, resolve
from .models import (
    EnqueueResult,
    QueueCounts,
    QueueEntry,
    QueueStatus,
    WorkItem,
    to_iso,
    utcnow,
)
from .retry_policy import RetryPolicy
from .store import PipelineStore, row_to_queue_entry

logger = logging.getLogger(__name__)


UPSERT_ENTRY_SQL = """
INSERT INTO queue_entries(
    tenant_id, activity_id, kind, course_id, status, attempts, max_attempts,
    payload, requested_by, created_at, updated_at
)
VALUES (
    :tenant_id, :activity_id, :kind, :course_id, 'pending', 0, :max_attempts,
    :payload, :requested_by, :now, :now
)
ON CONFLICT(tenant_id, activity_id, kind) DO UPDATE SET
    status = 'pending',
    attempts = 0,
    max_attempts = excluded.max_attempts,
    last_error = NULL,
    result = NULL,
    started_at = NULL,
    completed_at = NULL,
    next_eligible_at = NULL,
    course_id = excluded.course_id,
    payload = excluded.payload,
    requested_by = excluded.requested_by,
    updated_at = excluded.updated_at
WHERE queue_entries.status = 'failed'
   OR (
       queue_entries.status = 'completed'
       AND (queue_entries.completed_at IS NULL OR queue_entries.completed_at < :stale_before)
   )
"""

CLAIM_ENTRY_SQL = """
UPDATE queue_entries
SET status = 'processing', attempts = attempts + 1, started_at = :now, updated_at = :now
WHERE id = :id AND status = 'pending'
"""


class WorkQueue:
    """Analysis queue plus a fixed-size pool of consumer tasks.

    ``enqueue`` is safe to call without a running pool: entries stay
    ``pending`` in the store and are picked up by whichever process polls
    next.
    """

    def __init__(
        self,
        store: PipelineStore,
        executor: Optional[AnalysisExecutor] = None,
        *,
        concurrency: int = 2,
        staleness_hours: float = 4.0,
        retention_hours: float = 24.0,
        max_attempts: int = 3,
        submit_stagger_seconds: float = 1.0,
        poll_interval_seconds: float = 30.0,
        stall_timeout_minutes: int = 30,
        analysis_timeout_seconds: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._store = store
        self._executor = executor
        self._concurrency = concurrency
        self._staleness = timedelta(hours=staleness_hours)
        self._retention_hours = retention_hours
        self._max_attempts = max_attempts
        self._stagger = submit_stagger_seconds
        self._poll_interval = poll_interval_seconds
        self._stall_timeout = timedelta(minutes=stall_timeout_minutes)
        self._analysis_timeout = analysis_timeout_seconds
        self._retry_policy = retry_policy or RetryPolicy()
        self._clock = clock

        self._running = False
        self._ready: Optional[asyncio.Queue[int]] = None
        self._workers: List[asyncio.Task] = []
        self._poll_task: Optional[asyncio.Task] = None
        self._timers: Dict[int, asyncio.TimerHandle] = {}
        self._outstanding: Set[int] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def outstanding(self) -> int:
        """Jobs submitted by this process that have not finished yet."""
        return len(self._outstanding)

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        tenant_id: str,
        items: Iterable[WorkItem],
        requested_by: Optional[str] = None,
    ) -> EnqueueResult:
        """Queue analysis for ``items`` of one tenant.

        An item is skipped (counted as ``existing``) while its entry is
        pending, processing, or completed within the staleness window.
        Failed entries and stale completed ones are reset and re-queued.
        """
        result = EnqueueResult()
        now = self._clock()
        stale_before = now - self._staleness

        for item in items:
            try:
                entry_id, added = self._upsert_entry(
                    tenant_id, item, requested_by, now, stale_before
                )
            except Exception:  # noqa: BLE001
                result.errors += 1
                logger.exception(
                    "Failed to enqueue work item",
                    extra={
                        "tenant_id": tenant_id,
                        "activity_id": getattr(item, "activity_id", None),
                    },
                )
                continue

            if added:
                self._submit(entry_id, delay=self._stagger * result.added)
                result.added += 1
            else:
                result.existing += 1

        logger.info(
            "Enqueued work items",
            extra={"tenant_id": tenant_id, "requested_by": requested_by, **result.to_dict()},
        )
        return result

    def _upsert_entry(
        self,
        tenant_id: str,
        item: WorkItem,
        requested_by: Optional[str],
        now: datetime,
        stale_before: datetime,
    ) -> tuple[int, bool]:
        if item.tenant_id != tenant_id:
            raise ValueError(
                f"Work item {item.activity_id} belongs to tenant {item.tenant_id}, not {tenant_id}"
            )
        params = {
            "tenant_id": tenant_id,
            "activity_id": item.activity_id,
            "kind": item.kind.value,
            "course_id": item.course_id,
            "max_attempts": self._max_attempts,
            "payload": json.dumps(item.to_payload(), default=str),
            "requested_by": requested_by,
            "now": to_iso(now),
            "stale_before": to_iso(stale_before),
        }
        with self._store.transaction() as conn:
            changed = conn.execute(UPSERT_ENTRY_SQL, params).rowcount
            row = conn.execute(
                "SELECT id FROM queue_entries WHERE tenant_id = ? AND activity_id = ? AND kind = ?",
                (tenant_id, item.activity_id, item.kind.value),
            ).fetchone()
        return int(row["id"]), changed > 0

    def resubmit_due(self, tenant_id: Optional[str] = None) -> int:
        """Submit pending entries that are due and not already outstanding here."""
        if not self._running:
            return 0
        statement = """
            SELECT id FROM queue_entries
            WHERE status = 'pending'
              AND (next_eligible_at IS NULL OR next_eligible_at <= ?)
        """
        params: List[Any] = [to_iso(self._clock())]
        if tenant_id is not None:
            statement += " AND tenant_id = ?"
            params.append(tenant_id)
        statement += " ORDER BY id"

        submitted = 0
        for row in self._store.fetchall(statement, params):
            if self._submit(row["id"], delay=self._stagger * submitted):
                submitted += 1
        if submitted:
            logger.info(
                "Resubmitted due queue entries",
                extra={"tenant_id": tenant_id, "count": submitted},
            )
        return submitted

    def recover_stalled(self) -> int:
        """Return entries stuck in ``processing`` past the stall timeout.

        Entries with attempts left go back to ``pending``, the others fail.
        """
        now = self._clock()
        params = {
            "now": to_iso(now),
            "cutoff": to_iso(now - self._stall_timeout),
            "error": "Consumer stalled; attempt abandoned",
        }
        with self._store.transaction() as conn:
            failed = conn.execute(
                """
                UPDATE queue_entries
                SET status = 'failed', last_error = :error, started_at = NULL, updated_at = :now
                WHERE status = 'processing' AND started_at < :cutoff AND attempts >= max_attempts
                """,
                params,
            ).rowcount
            reset = conn.execute(
                """
                UPDATE queue_entries
                SET status = 'pending', last_error = :error, started_at = NULL,
                    next_eligible_at = NULL, updated_at = :now
                WHERE status = 'processing' AND started_at < :cutoff
                """,
                params,
            ).rowcount
        if failed or reset:
            logger.warning(
                "Recovered stalled queue entries",
                extra={"reset": reset, "failed": failed},
            )
        return failed + reset

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def process_entry(self, entry_id: int) -> Optional[QueueEntry]:
        """Run one analysis attempt for an entry.

        Returns the entry after the attempt, or ``None`` when there was
        nothing to do (missing, not pending, not yet due, or claimed by
        another consumer).
        """
        entry = self.get_entry(entry_id)
        if entry is None or entry.status != QueueStatus.PENDING:
            return None
        now = self._clock()
        if entry.next_eligible_at is not None and entry.next_eligible_at > now:
            return None

        claimed = self._store.execute(CLAIM_ENTRY_SQL, {"id": entry_id, "now": to_iso(now)})
        if not claimed:
            logger.debug("Queue entry claimed elsewhere", extra={"entry_id": entry_id})
            return None

        entry = self.get_entry(entry_id)
        logger.info(
            "Processing queue entry",
            extra={
                "entry_id": entry_id,
                "tenant_id": entry.tenant_id,
                "activity_id": entry.activity_id,
                "attempt": entry.attempts,
            },
        )

        try:
            outcome = await self._execute(WorkItem.from_payload(entry.payload))
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "Analysis raised",
                extra={"entry_id": entry_id, "tenant_id": entry.tenant_id},
            )
            return self._record_failure(entry, str(exc) or type(exc).__name__)

        if not outcome.success:
            return self._record_failure(entry, outcome.error or "Analysis reported failure")
        return self._record_success(entry, outcome.result)

    async def _execute(self, item: WorkItem) -> AnalysisOutcome:
        if self._executor is None:
            raise CollaboratorError("No analysis executor configured")
        call = resolve(self._executor(item))
        if self._analysis_timeout is not None:
            try:
                raw = await asyncio.wait_for(call, timeout=self._analysis_timeout)
            except asyncio.TimeoutError as exc:
                raise TimeoutError(
                    f"Analysis timed out after {self._analysis_timeout}s"
                ) from exc
        else:
            raw = await call
        return _coerce_outcome(raw)

    def _record_success(self, entry: QueueEntry, result: Any) -> QueueEntry:
        now = to_iso(self._clock())
        with self._store.transaction() as conn:
            conn.execute(
                """
                UPDATE queue_entries
                SET status = 'completed', result = ?, last_error = NULL,
                    completed_at = ?, next_eligible_at = NULL, updated_at = ?
                WHERE id = ? AND status = 'processing'
                """,
                (json.dumps(result, default=str), now, now, entry.id),
            )
            conn.execute(
                """
                UPDATE work_items
                SET needs_analysis = 0, analysis_count = analysis_count + 1
                WHERE tenant_id = ? AND activity_id = ? AND kind = ?
                """,
                (entry.tenant_id, entry.activity_id, entry.kind.value),
            )
        logger.info(
            "Analysis completed",
            extra={"entry_id": entry.id, "tenant_id": entry.tenant_id, "attempts": entry.attempts},
        )
        return self.get_entry(entry.id)

    def _record_failure(self, entry: QueueEntry, error: str) -> QueueEntry:
        now = self._clock()
        if entry.attempts >= entry.max_attempts:
            self._store.execute(
                """
                UPDATE queue_entries
                SET status = 'failed', last_error = ?, started_at = NULL, updated_at = ?
                WHERE id = ? AND status = 'processing'
                """,
                (error, to_iso(now), entry.id),
            )
            logger.error(
                "Analysis failed permanently",
                extra={
                    "entry_id": entry.id,
                    "tenant_id": entry.tenant_id,
                    "attempts": entry.attempts,
                    "error": error,
                },
            )
        else:
            next_eligible = self._retry_policy.next_eligible_at(entry.attempts - 1, now)
            self._store.execute(
                """
                UPDATE queue_entries
                SET status = 'pending', last_error = ?, started_at = NULL,
                    next_eligible_at = ?, updated_at = ?
                WHERE id = ? AND status = 'processing'
                """,
                (error, to_iso(next_eligible), to_iso(now), entry.id),
            )
            logger.info(
                "Scheduling analysis retry",
                extra={
                    "entry_id": entry.id,
                    "tenant_id": entry.tenant_id,
                    "attempt": entry.attempts,
                    "max_attempts": entry.max_attempts,
                    "next_eligible_at": to_iso(next_eligible),
                    "retry_strategy": self._retry_policy.strategy.value,
                },
            )
        return self.get_entry(entry.id)

    # ------------------------------------------------------------------
    # Pool lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start consumer tasks and the due-entry poll loop.

        Must be called from inside a running event loop.
        """
        if self._running:
            return
        if self._executor is None:
            raise CollaboratorError("Cannot start the consumer pool without an analysis executor")

        loop = asyncio.get_running_loop()
        self._ready = asyncio.Queue()
        self.recover_stalled()
        self._running = True
        self._workers = [
            loop.create_task(self._worker_loop(index)) for index in range(self._concurrency)
        ]
        self._poll_task = loop.create_task(self._poll_loop())
        self.resubmit_due()
        logger.info("Work queue started", extra={"concurrency": self._concurrency})

    async def shutdown(self, *, wait: bool = True) -> None:
        """Stop the pool; queued entries stay pending in the store.

        With ``wait`` the analyses already running are allowed to finish.
        """
        if not self._running:
            return
        self._running = False

        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

        if self._ready is not None:
            while True:
                try:
                    self._ready.get_nowait()
                except asyncio.QueueEmpty:
                    break
                self._ready.task_done()
            if wait:
                await self._ready.join()

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        self._outstanding.clear()
        self._idle.set()
        logger.info("Work queue stopped")

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until every job submitted by this process has finished.

        Returns ``False`` if ``timeout`` elapsed first.
        """
        if not self._outstanding:
            return True
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug(
                "Queue drain timed out",
                extra={"outstanding": len(self._outstanding), "timeout": timeout},
            )
            return False
        return True

    def _submit(self, entry_id: int, *, delay: float = 0.0) -> bool:
        if not self._running or entry_id in self._outstanding:
            return False
        self._outstanding.add(entry_id)
        self._idle.clear()
        self._schedule(entry_id, delay)
        return True

    def _schedule(self, entry_id: int, delay: float) -> None:
        if delay > 0:
            loop = asyncio.get_running_loop()
            self._timers[entry_id] = loop.call_later(delay, self._release_timer, entry_id)
        else:
            self._ready.put_nowait(entry_id)

    def _release_timer(self, entry_id: int) -> None:
        self._timers.pop(entry_id, None)
        if self._running:
            self._ready.put_nowait(entry_id)

    def _finish(self, entry_id: int) -> None:
        self._outstanding.discard(entry_id)
        if not self._outstanding:
            self._idle.set()

    async def _worker_loop(self, index: int) -> None:
        while True:
            entry_id = await self._ready.get()
            retry_in: Optional[float] = None
            try:
                entry = await self.process_entry(entry_id)
                if entry is not None and entry.status == QueueStatus.PENDING:
                    retry_in = _seconds_until(entry.next_eligible_at, self._clock())
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Consumer failed to process entry",
                    extra={"entry_id": entry_id, "worker": index},
                )
            finally:
                self._ready.task_done()
                if retry_in is not None and self._running:
                    self._schedule(entry_id, retry_in)
                else:
                    self._finish(entry_id)

    async def _poll_loop(self) -> None:
        try:
            while self._running:
                await asyncio.sleep(self._poll_interval)
                try:
                    self.recover_stalled()
                    self.resubmit_due()
                except Exception:  # noqa: BLE001
                    logger.exception("Queue poll failed")
        except asyncio.CancelledError:
            logger.debug("Queue poll loop cancelled")
            raise

    # ------------------------------------------------------------------
    # Reads and maintenance
    # ------------------------------------------------------------------

    def get_entry(self, entry_id: int) -> Optional[QueueEntry]:
        row = self._store.fetchone("SELECT * FROM queue_entries WHERE id = ?", (entry_id,))
        return row_to_queue_entry(row) if row else None

    def list_entries(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[QueueStatus] = None,
        limit: int = 100,
    ) -> List[QueueEntry]:
        clauses = []
        params: List[Any] = []
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(QueueStatus(status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        rows = self._store.fetchall(
            f"SELECT * FROM queue_entries {where} ORDER BY updated_at DESC LIMIT ?", params
        )
        return [row_to_queue_entry(row) for row in rows]

    def get_status(self, tenant_id: Optional[str] = None) -> QueueCounts:
        """Per-status counts; zeros when the tenant has no entries."""
        counts = QueueCounts()
        statement = "SELECT status, COUNT(*) AS total FROM queue_entries"
        params: List[Any] = []
        if tenant_id is not None:
            statement += " WHERE tenant_id = ?"
            params.append(tenant_id)
        statement += " GROUP BY status"
        try:
            rows = self._store.fetchall(statement, params)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to read queue status", extra={"tenant_id": tenant_id})
            return counts
        for row in rows:
            status = row["status"]
            if status in {s.value for s in QueueStatus}:
                setattr(counts, status, int(row["total"]))
        return counts

    def count_requested_by(self, requested_by: str) -> QueueCounts:
        """Per-status counts of the entries last queued by one requester."""
        counts = QueueCounts()
        rows = self._store.fetchall(
            """
            SELECT status, COUNT(*) AS total FROM queue_entries
            WHERE requested_by = ? GROUP BY status
            """,
            (requested_by,),
        )
        for row in rows:
            setattr(counts, row["status"], int(row["total"]))
        return counts

    def cleanup(self, older_than_hours: Optional[float] = None) -> int:
        """Delete completed entries finished more than ``older_than_hours`` ago."""
        hours = self._retention_hours if older_than_hours is None else older_than_hours
        cutoff = self._clock() - timedelta(hours=hours)
        deleted = self._store.execute(
            "DELETE FROM queue_entries WHERE status = 'completed' AND completed_at < ?",
            (to_iso(cutoff),),
        )
        logger.info(
            "Cleaned up completed queue entries",
            extra={"deleted": deleted, "older_than_hours": hours},
        )
        return deleted


def _coerce_outcome(raw: Any) -> AnalysisOutcome:
    if isinstance(raw, AnalysisOutcome):
        return raw
    if isinstance(raw, dict) and "success" in raw:
        return AnalysisOutcome(
            success=bool(raw["success"]), result=raw.get("result"), error=raw.get("error")
        )
    return AnalysisOutcome(success=False, error=f"Unexpected executor result: {type(raw).__name__}")


def _seconds_until(moment: Optional[datetime], now: datetime) -> float:
    if moment is None:
        return 0.0
    return max(0.0, (moment - now).total_seconds())
