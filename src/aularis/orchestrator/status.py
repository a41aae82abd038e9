"""Status collection for operator dashboards and the CLI."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import psutil

from .eligibility import EligibilityMarker
from .process_state import ProcessStateTracker
from .queue import WorkQueue
from .scheduler import BatchScheduler
from .store import PipelineStore

logger = logging.getLogger(__name__)


def collect_status_report(
    *,
    workspace_path: Path,
    tracker: ProcessStateTracker,
    queue: WorkQueue,
    store: PipelineStore,
    marker: Optional[EligibilityMarker] = None,
    scheduler: Optional[BatchScheduler] = None,
    recent_jobs: int = 5,
) -> Dict[str, Any]:
    """Collect pipeline status.

    Returns:
        Status report dict with keys:
        - process: Shared process-state report
        - queue: Queue counts across all tenants
        - activities: Per-tenant pending/analyzed counts of open items
        - scheduler: Scheduler status (``None`` when not running here)
        - jobs: Most recent batch jobs
        - system: Host resource metrics
    """
    return {
        "process": tracker.report(),
        "queue": queue.get_status().to_dict(),
        "activities": _collect_activity_stats(marker),
        "scheduler": scheduler.get_status() if scheduler is not None else None,
        "jobs": _collect_recent_jobs(store, recent_jobs),
        "system": _collect_system_metrics(Path(workspace_path)),
    }


def _collect_activity_stats(marker: Optional[EligibilityMarker]) -> Dict[str, Dict[str, int]]:
    if marker is None:
        return {}
    try:
        return marker.activity_stats()
    except Exception:  # noqa: BLE001
        logger.exception("Failed to collect activity stats")
        return {}


def _collect_recent_jobs(store: PipelineStore, limit: int) -> list:
    try:
        return [job.to_dict() for job in store.recent_batch_jobs(limit)]
    except Exception:  # noqa: BLE001
        logger.exception("Failed to read batch jobs")
        return []


def _collect_system_metrics(workspace: Path) -> Dict[str, Any]:
    """Collect system resource metrics using psutil."""
    memory = psutil.virtual_memory()
    disk_path = workspace if workspace.exists() else Path.home()
    disk = psutil.disk_usage(str(disk_path))

    return {
        "cpu_percent": psutil.cpu_percent(interval=None),
        "cpu_count": psutil.cpu_count() or 1,
        "memory_percent": memory.percent,
        "disk_free_gb": disk.free / (1024 ** 3),
        "disk_percent": disk.percent,
    }
