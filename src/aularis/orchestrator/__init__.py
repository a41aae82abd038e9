"""Batch orchestration: eligibility, work queue, run state and scheduling."""

from .batch import BatchOrchestrator
from .collaborators import AnalysisExecutor, AnalysisOutcome, ContentFetcher, TenantDirectory
from .content import ContentSynchronizer, normalise_activity, normalise_course
from .eligibility import EligibilityMarker
from .models import (
    ALL_TENANTS,
    BatchJob,
    BatchStatus,
    ContentKind,
    EnqueueResult,
    QueueCounts,
    QueueEntry,
    QueueStatus,
    Tenant,
    TriggerType,
    WorkItem,
)
from .process_state import (
    FileStateStore,
    MemoryStateStore,
    ProcessState,
    ProcessStateTracker,
    SqliteStateStore,
    StateStore,
)
from .queue import WorkQueue
from .retry_policy import RetryPolicy, RetryStrategy
from .scheduler import BatchScheduler
from .store import PipelineStore

__all__ = [
    "ALL_TENANTS",
    "AnalysisExecutor",
    "AnalysisOutcome",
    "BatchJob",
    "BatchOrchestrator",
    "BatchScheduler",
    "BatchStatus",
    "ContentFetcher",
    "ContentKind",
    "ContentSynchronizer",
    "EligibilityMarker",
    "EnqueueResult",
    "FileStateStore",
    "MemoryStateStore",
    "PipelineStore",
    "ProcessState",
    "ProcessStateTracker",
    "QueueCounts",
    "QueueEntry",
    "QueueStatus",
    "RetryPolicy",
    "RetryStrategy",
    "SqliteStateStore",
    "StateStore",
    "Tenant",
    "TenantDirectory",
    "TriggerType",
    "WorkItem",
    "WorkQueue",
    "normalise_activity",
    "normalise_course",
]
