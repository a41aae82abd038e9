"""SQLite persistence shared by the pipeline components.

One database file holds work items, queue entries, batch jobs and
optionally the shared process state. Several processes may open the same
file; cross-process exclusion relies on SQLite's write lock, unique keys and
guarded updates rather than in-memory locks.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence

from aularis.errors import QueueError

from .models import (
    BATCH_COUNTERS,
    BatchJob,
    BatchStatus,
    ContentKind,
    QueueEntry,
    QueueStatus,
    TriggerType,
    WorkItem,
    WorkItemKey,
    from_iso,
    to_iso,
    utcnow,
)

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS work_items (
    tenant_id TEXT NOT NULL,
    course_id TEXT NOT NULL,
    activity_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    visible INTEGER NOT NULL DEFAULT 1,
    open_date TEXT,
    close_date TEXT,
    needs_analysis INTEGER NOT NULL DEFAULT 0,
    analysis_count INTEGER NOT NULL DEFAULT 0,
    payload TEXT NOT NULL DEFAULT '{}',
    last_synced_at TEXT,
    PRIMARY KEY (tenant_id, activity_id, kind)
);

CREATE INDEX IF NOT EXISTS idx_work_items_eligible
    ON work_items(tenant_id, needs_analysis, visible);

CREATE TABLE IF NOT EXISTS queue_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    activity_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    course_id TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    last_error TEXT,
    requested_by TEXT,
    payload TEXT NOT NULL,
    result TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    next_eligible_at TEXT,
    updated_at TEXT NOT NULL,
    UNIQUE (tenant_id, activity_id, kind)
);

CREATE INDEX IF NOT EXISTS idx_queue_entries_status
    ON queue_entries(tenant_id, status);

CREATE TABLE IF NOT EXISTS batch_jobs (
    job_id TEXT PRIMARY KEY,
    trigger TEXT NOT NULL,
    scope TEXT NOT NULL,
    status TEXT NOT NULL,
    counters TEXT NOT NULL DEFAULT '{}',
    started_at TEXT NOT NULL,
    completed_at TEXT,
    duration_seconds REAL,
    errors TEXT NOT NULL DEFAULT '[]',
    fatal_error TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_batch_jobs_single_running
    ON batch_jobs(status) WHERE status = 'running';

CREATE TABLE IF NOT EXISTS kv_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class PipelineStore:
    """SQLite-backed persistence for the pipeline."""

    def __init__(self, path: Path, *, busy_timeout: float = 30.0) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            self._path,
            timeout=busy_timeout,
            check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(SCHEMA)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction holding SQLite's reserved lock from the start."""
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.rollback()
                raise
            else:
                self._conn.commit()

    def execute(self, statement: str, params: Sequence[Any] | dict = ()) -> int:
        """Run one write statement in its own transaction; return rowcount."""
        with self.transaction() as conn:
            cursor = conn.execute(statement, params)
            return cursor.rowcount

    def fetchall(self, statement: str, params: Sequence[Any] | dict = ()) -> List[sqlite3.Row]:
        with self._lock:
            cursor = self._conn.execute(statement, params)
            return cursor.fetchall()

    def fetchone(self, statement: str, params: Sequence[Any] | dict = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            cursor = self._conn.execute(statement, params)
            return cursor.fetchone()

    # ------------------------------------------------------------------
    # Work items
    # ------------------------------------------------------------------

    def upsert_work_item(self, item: WorkItem, *, now: Optional[datetime] = None) -> None:
        """Insert or refresh a work item without touching its analysis flag."""
        synced_at = to_iso(now or utcnow())
        self.execute(
            """
            INSERT INTO work_items(
                tenant_id, course_id, activity_id, kind, name, visible,
                open_date, close_date, needs_analysis, analysis_count,
                payload, last_synced_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, 0, ?, ?)
            ON CONFLICT(tenant_id, activity_id, kind) DO UPDATE SET
                course_id = excluded.course_id,
                name = excluded.name,
                visible = excluded.visible,
                open_date = excluded.open_date,
                close_date = excluded.close_date,
                payload = excluded.payload,
                last_synced_at = excluded.last_synced_at
            """,
            (
                item.tenant_id,
                item.course_id,
                item.activity_id,
                item.kind.value,
                item.name,
                int(item.visible),
                to_iso(item.open_date),
                to_iso(item.close_date),
                json.dumps(item.payload, default=str),
                synced_at,
            ),
        )

    def get_work_item(self, key: WorkItemKey) -> Optional[WorkItem]:
        tenant_id, activity_id, kind = key
        row = self.fetchone(
            "SELECT * FROM work_items WHERE tenant_id = ? AND activity_id = ? AND kind = ?",
            (tenant_id, activity_id, ContentKind(kind).value),
        )
        return _row_to_work_item(row) if row else None

    def list_work_items(
        self,
        tenant_id: Optional[str] = None,
        *,
        needs_analysis: Optional[bool] = None,
        exclude_failed: bool = False,
        open_at: Optional[datetime] = None,
    ) -> List[WorkItem]:
        """List work items.

        ``exclude_failed`` drops keys whose queue entry failed for good;
        ``open_at`` keeps only visible items whose window contains that moment.
        """
        clauses = []
        params: List[Any] = []
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        if needs_analysis is not None:
            clauses.append("needs_analysis = ?")
            params.append(int(needs_analysis))
        if open_at is not None:
            moment = to_iso(open_at)
            clauses.append(
                "visible = 1 AND (open_date IS NULL OR open_date <= ?)"
                " AND (close_date IS NULL OR close_date > ?)"
            )
            params.extend([moment, moment])
        if exclude_failed:
            clauses.append(
                "NOT EXISTS (SELECT 1 FROM queue_entries q WHERE q.tenant_id = work_items.tenant_id"
                " AND q.activity_id = work_items.activity_id AND q.kind = work_items.kind"
                " AND q.status = 'failed')"
            )
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.fetchall(
            f"SELECT * FROM work_items {where} ORDER BY tenant_id, course_id, activity_id",
            params,
        )
        return [_row_to_work_item(row) for row in rows]

    # ------------------------------------------------------------------
    # Batch jobs
    # ------------------------------------------------------------------

    def insert_batch_job(self, job: BatchJob) -> None:
        """Persist a new running job.

        Raises:
            QueueError: If another job is already marked running
        """
        try:
            self.execute(
                """
                INSERT INTO batch_jobs(job_id, trigger, scope, status, counters, started_at, errors)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.job_id,
                    job.trigger.value,
                    job.scope,
                    job.status.value,
                    json.dumps(job.counters),
                    to_iso(job.started_at),
                    json.dumps(job.errors),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise QueueError(
                "Another batch job is already running", details={"job_id": job.job_id}
            ) from exc

    def save_batch_job(self, job: BatchJob) -> None:
        self.execute(
            """
            UPDATE batch_jobs
            SET status = ?, counters = ?, completed_at = ?, duration_seconds = ?,
                errors = ?, fatal_error = ?
            WHERE job_id = ? AND status = 'running'
            """,
            (
                job.status.value,
                json.dumps(job.counters),
                to_iso(job.completed_at),
                job.duration_seconds,
                json.dumps(job.errors),
                job.fatal_error,
                job.job_id,
            ),
        )

    def get_batch_job(self, job_id: str) -> Optional[BatchJob]:
        row = self.fetchone("SELECT * FROM batch_jobs WHERE job_id = ?", (job_id,))
        return _row_to_batch_job(row) if row else None

    def recent_batch_jobs(self, limit: int = 20) -> List[BatchJob]:
        rows = self.fetchall(
            "SELECT * FROM batch_jobs ORDER BY started_at DESC LIMIT ?", (limit,)
        )
        return [_row_to_batch_job(row) for row in rows]

    def fail_orphaned_batch_jobs(self, reason: str, *, now: Optional[datetime] = None) -> int:
        """Close running jobs left behind by a crashed or timed-out run."""
        changed = self.execute(
            """
            UPDATE batch_jobs
            SET status = 'failed', completed_at = ?, fatal_error = ?
            WHERE status = 'running'
            """,
            (to_iso(now or utcnow()), reason),
        )
        if changed:
            logger.warning(
                "Marked orphaned batch jobs as failed",
                extra={"count": changed, "reason": reason},
            )
        return changed


def _row_to_work_item(row: sqlite3.Row) -> WorkItem:
    return WorkItem(
        tenant_id=row["tenant_id"],
        course_id=row["course_id"],
        activity_id=row["activity_id"],
        kind=ContentKind(row["kind"]),
        name=row["name"],
        visible=bool(row["visible"]),
        open_date=from_iso(row["open_date"]),
        close_date=from_iso(row["close_date"]),
        needs_analysis=bool(row["needs_analysis"]),
        analysis_count=row["analysis_count"],
        payload=json.loads(row["payload"] or "{}"),
        last_synced_at=from_iso(row["last_synced_at"]),
    )


def row_to_queue_entry(row: sqlite3.Row) -> QueueEntry:
    return QueueEntry(
        id=row["id"],
        tenant_id=row["tenant_id"],
        activity_id=row["activity_id"],
        kind=ContentKind(row["kind"]),
        course_id=row["course_id"],
        status=QueueStatus(row["status"]),
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        last_error=row["last_error"],
        requested_by=row["requested_by"],
        payload=json.loads(row["payload"]),
        result=json.loads(row["result"]) if row["result"] is not None else None,
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
        started_at=from_iso(row["started_at"]),
        completed_at=from_iso(row["completed_at"]),
        next_eligible_at=from_iso(row["next_eligible_at"]),
    )


def _row_to_batch_job(row: sqlite3.Row) -> BatchJob:
    counters = dict.fromkeys(BATCH_COUNTERS, 0)
    counters.update(json.loads(row["counters"] or "{}"))
    return BatchJob(
        job_id=row["job_id"],
        trigger=TriggerType(row["trigger"]),
        scope=row["scope"],
        status=BatchStatus(row["status"]),
        counters=counters,
        started_at=from_iso(row["started_at"]),
        completed_at=from_iso(row["completed_at"]),
        duration_seconds=row["duration_seconds"],
        errors=json.loads(row["errors"] or "[]"),
        fatal_error=row["fatal_error"],
    )
