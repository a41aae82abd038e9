"""Composition root: builds every service from settings.

There are no module-level singletons; each process builds one
:class:`Application` and passes its parts where they are needed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from aularis.configuration.settings import Settings, StateBackend
from aularis.orchestrator.batch import BatchOrchestrator
from aularis.orchestrator.collaborators import (
    AnalysisExecutor,
    ContentFetcher,
    TenantDirectory,
    load_collaborator,
)
from aularis.orchestrator.content import ContentSynchronizer
from aularis.orchestrator.eligibility import EligibilityMarker
from aularis.orchestrator.models import Tenant, utcnow
from aularis.orchestrator.process_state import (
    FileStateStore,
    MemoryStateStore,
    ProcessStateTracker,
    SqliteStateStore,
    StateStore,
)
from aularis.orchestrator.queue import WorkQueue
from aularis.orchestrator.scheduler import BatchScheduler
from aularis.orchestrator.status import collect_status_report
from aularis.orchestrator.store import PipelineStore
from aularis.remote.directory import EnrolmentTenantDirectory, StaticTenantDirectory
from aularis.remote.tunnel import RemoteTunnelClient

logger = logging.getLogger(__name__)


@dataclass
class Application:
    """Container owning every pipeline service of one process."""

    settings: Settings
    store: PipelineStore
    tracker: ProcessStateTracker
    marker: EligibilityMarker
    queue: WorkQueue
    synchronizer: ContentSynchronizer
    directory: TenantDirectory
    orchestrator: BatchOrchestrator
    scheduler: BatchScheduler
    tunnel: Optional[RemoteTunnelClient] = None
    executor_configured: bool = False
    extra_stores: List[PipelineStore] = field(default_factory=list)

    def start(self, *, with_scheduler: bool = True) -> None:
        """Start the consumer pool (when an executor exists) and the timers.

        Must be called from inside a running event loop.
        """
        if self.executor_configured:
            self.queue.start()
        else:
            logger.warning("No analysis executor configured; queued work waits for another process")
        if with_scheduler and self.settings.schedule.enabled:
            self.scheduler.start()

    async def close(self) -> None:
        self.scheduler.stop()
        await self.scheduler.wait_for_run()
        await self.queue.shutdown()
        if self.tunnel is not None:
            await self.tunnel.disconnect()
        for store in self.extra_stores:
            store.close()
        self.store.close()

    def status_report(self) -> dict:
        return collect_status_report(
            workspace_path=self.settings.workspace_path,
            tracker=self.tracker,
            queue=self.queue,
            store=self.store,
            marker=self.marker,
            scheduler=self.scheduler if self.scheduler.initialized else None,
        )


def build_application(
    settings: Settings,
    *,
    content_fetcher: Optional[ContentFetcher] = None,
    analysis_executor: Optional[AnalysisExecutor] = None,
    tenant_directory: Optional[TenantDirectory] = None,
    tunnel: Optional[RemoteTunnelClient] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Application:
    """Wire the pipeline.

    Collaborators passed in take precedence over the import paths in
    ``settings.collaborators``.

    Raises:
        CollaboratorError: A configured import path cannot be loaded
    """
    settings.workspace_path.mkdir(parents=True, exist_ok=True)

    if content_fetcher is None and settings.collaborators.content_fetcher:
        content_fetcher = load_collaborator(settings.collaborators.content_fetcher)
    if analysis_executor is None and settings.collaborators.analysis_executor:
        analysis_executor = load_collaborator(settings.collaborators.analysis_executor)

    store = PipelineStore(settings.queue_database_path)
    extra_stores: List[PipelineStore] = []
    state_store = _build_state_store(settings, store, extra_stores)
    tracker = ProcessStateTracker(
        state_store, run_timeout_minutes=settings.state.run_timeout_minutes, clock=clock
    )

    queue_settings = settings.queue
    queue = WorkQueue(
        store,
        analysis_executor,
        concurrency=queue_settings.concurrency,
        staleness_hours=queue_settings.staleness_hours,
        retention_hours=queue_settings.retention_hours,
        max_attempts=queue_settings.max_attempts,
        submit_stagger_seconds=queue_settings.submit_stagger_seconds,
        poll_interval_seconds=queue_settings.poll_interval_seconds,
        stall_timeout_minutes=queue_settings.stall_timeout_minutes,
        analysis_timeout_seconds=queue_settings.analysis_timeout_seconds,
        retry_policy=queue_settings.retry,
        clock=clock,
    )
    marker = EligibilityMarker(store, clock=clock)
    synchronizer = ContentSynchronizer(store, content_fetcher, clock=clock)

    if tenant_directory is None:
        if settings.tunnel.enabled:
            tunnel = tunnel or RemoteTunnelClient(settings.tunnel)
            tenant_directory = EnrolmentTenantDirectory(
                tunnel,
                teacher_role_id=settings.tunnel.teacher_role_id,
                url_template=settings.tunnel.tenant_url_template,
            )
        else:
            tenant_directory = StaticTenantDirectory(
                Tenant(id=t.id, base_url=t.base_url, name=t.name) for t in settings.tenants
            )

    orchestrator = BatchOrchestrator(
        store=store,
        tracker=tracker,
        marker=marker,
        queue=queue,
        synchronizer=synchronizer,
        directory=tenant_directory,
        drain_timeout_seconds=settings.schedule.drain_timeout_seconds,
        clock=clock,
    )
    scheduler = BatchScheduler(
        orchestrator,
        queue,
        tracker,
        cron_expressions=settings.schedule.cron_expressions,
        timezone=settings.schedule.timezone,
        cleanup_cron=settings.schedule.cleanup_cron,
        health_check_cron=settings.schedule.health_check_cron,
        wait_for_drain=settings.schedule.wait_for_drain,
    )

    app = Application(
        settings=settings,
        store=store,
        tracker=tracker,
        marker=marker,
        queue=queue,
        synchronizer=synchronizer,
        directory=tenant_directory,
        orchestrator=orchestrator,
        scheduler=scheduler,
        tunnel=tunnel,
        executor_configured=analysis_executor is not None,
        extra_stores=extra_stores,
    )
    logger.info(
        "Application built",
        extra={
            "database": str(settings.queue_database_path),
            "state_backend": settings.state.backend.value,
            "tunnel_enabled": settings.tunnel.enabled,
            "fetcher": content_fetcher is not None,
            "executor": analysis_executor is not None,
        },
    )
    return app


def _build_state_store(
    settings: Settings, store: PipelineStore, extra_stores: List[PipelineStore]
) -> StateStore:
    backend = settings.state.backend
    if backend == StateBackend.MEMORY:
        return MemoryStateStore()
    if backend == StateBackend.SQLITE:
        if settings.state_path == settings.queue_database_path:
            return SqliteStateStore(store)
        state_db = PipelineStore(settings.state_path)
        extra_stores.append(state_db)
        return SqliteStateStore(state_db)
    return FileStateStore(settings.state_path)
