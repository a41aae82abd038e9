"""Shared run-state snapshot visible to every participating process.

The snapshot is both the progress report shown to operators and the gate
that keeps at most one top-level run active. It is persisted through a
:class:`StateStore` so separate processes (scheduler daemon, CLI, web
workers) see the same state.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol

from filelock import FileLock, Timeout
from pydantic import BaseModel, Field, ValidationError

from aularis.errors import RunConflictError, StateStoreError

from .models import to_iso, utcnow
from .store import PipelineStore

logger = logging.getLogger(__name__)

MAX_ERRORS = 10
IDLE_STEP = "Idle"


class ProcessState(BaseModel):
    """Single shared snapshot of the current (or last) run."""

    is_active: bool = False
    process_type: Optional[str] = None
    current_step: str = IDLE_STEP
    total_tenants: int = Field(default=0, ge=0)
    processed_tenants: int = Field(default=0, ge=0)
    total_courses: int = Field(default=0, ge=0)
    processed_courses: int = Field(default=0, ge=0)
    total_analyses: int = Field(default=0, ge=0)
    processed_analyses: int = Field(default=0, ge=0)
    current_tenant: Optional[str] = None
    errors: List[str] = Field(default_factory=list)
    start_time: Optional[datetime] = None
    last_update: Optional[datetime] = None
    estimated_completion: Optional[datetime] = None
    batch_job_id: Optional[str] = None


StateMutator = Callable[[Optional[ProcessState]], ProcessState]

UPDATABLE_FIELDS = frozenset(ProcessState.model_fields) - {
    "is_active",
    "start_time",
    "last_update",
    "estimated_completion",
    "errors",
}


# =============================================================================
# Stores
# =============================================================================


class StateStore(Protocol):
    """Persistence for the shared snapshot.

    ``update`` runs the mutator while holding the store's lock, so a
    read-check-write sequence is atomic across processes. If the mutator
    raises, nothing is written.
    """

    def read(self) -> Optional[ProcessState]:
        ...

    def update(self, mutator: StateMutator) -> ProcessState:
        ...


class FileStateStore:
    """JSON file guarded by a lock file, replaced atomically on write."""

    def __init__(self, path: Path, *, lock_timeout: float = 10.0) -> None:
        self._path = Path(path).expanduser()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = FileLock(str(self._path.with_suffix(self._path.suffix + ".lock")), timeout=lock_timeout)

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> Optional[ProcessState]:
        try:
            with self._lock:
                return self._load()
        except Timeout as exc:
            raise StateStoreError(
                "Timed out waiting for the state file lock", details={"path": str(self._path)}
            ) from exc

    def update(self, mutator: StateMutator) -> ProcessState:
        try:
            with self._lock:
                try:
                    current = self._load()
                except StateStoreError:
                    logger.warning(
                        "Discarding unreadable process state", extra={"path": str(self._path)}
                    )
                    current = None
                state = mutator(current)
                tmp_path = self._path.with_suffix(".tmp")
                tmp_path.write_text(state.model_dump_json(indent=2), encoding="utf-8")
                os.replace(tmp_path, self._path)
                return state
        except Timeout as exc:
            raise StateStoreError(
                "Timed out waiting for the state file lock", details={"path": str(self._path)}
            ) from exc
        except OSError as exc:
            raise StateStoreError(
                f"Cannot write process state: {exc}", details={"path": str(self._path)}
            ) from exc

    def _load(self) -> Optional[ProcessState]:
        if not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return ProcessState.model_validate(data)
        except (OSError, ValueError, ValidationError) as exc:
            raise StateStoreError(
                f"Corrupt process state file: {exc}", details={"path": str(self._path)}
            ) from exc


class SqliteStateStore:
    """Snapshot kept as one row of the pipeline database's ``kv_state`` table."""

    def __init__(self, store: PipelineStore, *, key: str = "process_state") -> None:
        self._store = store
        self._key = key

    def read(self) -> Optional[ProcessState]:
        row = self._store.fetchone("SELECT value FROM kv_state WHERE key = ?", (self._key,))
        return self._decode(row["value"]) if row else None

    def update(self, mutator: StateMutator) -> ProcessState:
        with self._store.transaction() as conn:
            row = conn.execute(
                "SELECT value FROM kv_state WHERE key = ?", (self._key,)
            ).fetchone()
            current = None
            if row:
                try:
                    current = self._decode(row["value"])
                except StateStoreError:
                    logger.warning("Discarding unreadable process state", extra={"key": self._key})
            state = mutator(current)
            conn.execute(
                """
                INSERT INTO kv_state(key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (self._key, state.model_dump_json(), to_iso(utcnow())),
            )
        return state

    def _decode(self, raw: str) -> ProcessState:
        try:
            return ProcessState.model_validate_json(raw)
        except ValidationError as exc:
            raise StateStoreError(
                f"Corrupt process state row: {exc}", details={"key": self._key}
            ) from exc


class MemoryStateStore:
    """In-process store for single-process deployments and tests."""

    def __init__(self) -> None:
        self._state: Optional[ProcessState] = None
        self._lock = threading.Lock()

    def read(self) -> Optional[ProcessState]:
        with self._lock:
            return self._state.model_copy(deep=True) if self._state else None

    def update(self, mutator: StateMutator) -> ProcessState:
        with self._lock:
            current = self._state.model_copy(deep=True) if self._state else None
            state = mutator(current)
            self._state = state.model_copy(deep=True)
            return state


# =============================================================================
# Tracker
# =============================================================================


class ProcessStateTracker:
    """Reads and writes the shared snapshot and enforces run exclusivity."""

    def __init__(
        self,
        store: StateStore,
        *,
        run_timeout_minutes: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._run_timeout = timedelta(minutes=run_timeout_minutes)
        self._clock = clock

    @property
    def store(self) -> StateStore:
        return self._store

    def init_process(
        self,
        process_type: str,
        total_units: int = 0,
        *,
        batch_job_id: Optional[str] = None,
    ) -> ProcessState:
        """Start a run, or raise :class:`RunConflictError` if one is active.

        An active snapshot that has not been updated within the run timeout
        is treated as abandoned and replaced.
        """
        now = self._clock()

        def mutate(current: Optional[ProcessState]) -> ProcessState:
            if current is not None and current.is_active:
                if not self._is_abandoned(current, now):
                    raise RunConflictError(
                        f"A '{current.process_type}' run is already active",
                        active_since=to_iso(current.start_time),
                        process_type=current.process_type,
                    )
                logger.warning(
                    "Replacing abandoned process state",
                    extra={
                        "process_type": current.process_type,
                        "last_update": to_iso(current.last_update),
                    },
                )
            return ProcessState(
                is_active=True,
                process_type=process_type,
                current_step="Starting",
                total_tenants=total_units,
                start_time=now,
                last_update=now,
                batch_job_id=batch_job_id,
            )

        state = self._store.update(mutate)
        logger.info(
            "Process started",
            extra={"process_type": process_type, "total_units": total_units},
        )
        return state

    def update_progress(self, **partial: Any) -> ProcessState:
        """Merge counters or step text into the snapshot."""
        unknown = set(partial) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown process state fields: {sorted(unknown)}")
        now = self._clock()

        def mutate(current: Optional[ProcessState]) -> ProcessState:
            data = (current or ProcessState()).model_dump()
            data.update(partial)
            data["last_update"] = now
            state = ProcessState.model_validate(data)
            state.estimated_completion = _estimate_completion(state, now)
            return state

        return self._store.update(mutate)

    def finish_process(self, success: bool, message: Optional[str] = None) -> ProcessState:
        now = self._clock()
        step = message or (
            "Process completed successfully" if success else "Process finished with errors"
        )

        def mutate(current: Optional[ProcessState]) -> ProcessState:
            state = current or ProcessState()
            state.is_active = False
            state.current_step = step
            state.current_tenant = None
            state.estimated_completion = None
            state.last_update = now
            return state

        state = self._store.update(mutate)
        logger.info(
            "Process finished",
            extra={"process_type": state.process_type, "success": success, "step": step},
        )
        return state

    def add_error(self, message: str) -> ProcessState:
        """Append a timestamped error, keeping only the most recent ones."""
        now = self._clock()
        entry = f"{to_iso(now)}: {message}"

        def mutate(current: Optional[ProcessState]) -> ProcessState:
            state = current or ProcessState()
            state.errors = (state.errors + [entry])[-MAX_ERRORS:]
            state.last_update = now
            return state

        return self._store.update(mutate)

    def get_state(self) -> ProcessState:
        """Current snapshot, or the idle default if none can be read."""
        try:
            state = self._store.read()
        except Exception:  # noqa: BLE001
            logger.exception("Failed to read process state")
            return ProcessState()
        return state or ProcessState()

    def is_active(self) -> bool:
        state = self.get_state()
        return state.is_active and not self._is_abandoned(state, self._clock())

    def progress_percentage(self, state: Optional[ProcessState] = None) -> int:
        state = state or self.get_state()
        if not state.is_active or state.total_tenants == 0:
            return 0
        return round(state.processed_tenants / state.total_tenants * 100)

    def elapsed_time(self, state: Optional[ProcessState] = None) -> str:
        state = state or self.get_state()
        if state.start_time is None:
            return "N/A"
        end = self._clock() if state.is_active else (state.last_update or self._clock())
        seconds = max(0, int((end - state.start_time).total_seconds()))
        minutes, seconds = divmod(seconds, 60)
        return f"{minutes}m {seconds}s"

    def report(self) -> Dict[str, Any]:
        """Snapshot shaped for dashboards and the CLI."""
        state = self.get_state()
        return {
            "is_active": state.is_active,
            "process_type": state.process_type,
            "current_step": state.current_step,
            "progress": {
                "percentage": self.progress_percentage(state),
                "tenants": {"processed": state.processed_tenants, "total": state.total_tenants},
                "courses": {"processed": state.processed_courses, "total": state.total_courses},
                "analyses": {"processed": state.processed_analyses, "total": state.total_analyses},
                "current_tenant": state.current_tenant,
            },
            "timing": {
                "start_time": to_iso(state.start_time),
                "elapsed_time": self.elapsed_time(state),
                "estimated_completion": to_iso(state.estimated_completion),
            },
            "errors": list(state.errors),
            "batch_job_id": state.batch_job_id,
        }

    def _is_abandoned(self, state: ProcessState, now: datetime) -> bool:
        reference = state.last_update or state.start_time
        if reference is None:
            return True
        return now - reference > self._run_timeout


def _estimate_completion(state: ProcessState, now: datetime) -> Optional[datetime]:
    if not state.is_active or state.processed_tenants <= 0 or state.start_time is None:
        return None
    elapsed = now - state.start_time
    per_unit = elapsed / state.processed_tenants
    remaining = max(0, state.total_tenants - state.processed_tenants)
    return now + per_unit * remaining
