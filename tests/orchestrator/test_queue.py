"""Tests for the deduplicated analysis queue and its consumer pool."""

from __future__ import annotations

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from aularis.errors import CollaboratorError
from aularis.orchestrator.collaborators import AnalysisOutcome
from aularis.orchestrator.eligibility import EligibilityMarker
from aularis.orchestrator.models import ContentKind, QueueStatus, to_iso
from aularis.orchestrator.queue import CLAIM_ENTRY_SQL, WorkQueue
from aularis.orchestrator.retry_policy import RetryPolicy, RetryStrategy
from aularis.orchestrator.store import PipelineStore


def succeed(item):
    return AnalysisOutcome(success=True, result={"activity": item.activity_id})


def only_entry(queue: WorkQueue):
    entries = queue.list_entries()
    assert len(entries) == 1
    return entries[0]


@pytest.mark.asyncio()
async def test_enqueue_deduplicates_pending_items(store, clock, make_item) -> None:
    queue = WorkQueue(store, clock=clock)

    first = await queue.enqueue("101", [make_item("1"), make_item("2")], requested_by="test")
    second = await queue.enqueue("101", [make_item("1"), make_item("2")], requested_by="test")

    assert first.to_dict() == {"added": 2, "existing": 0, "errors": 0}
    assert second.to_dict() == {"added": 0, "existing": 2, "errors": 0}
    assert queue.get_status("101").pending == 2


@pytest.mark.asyncio()
async def test_same_activity_id_with_other_kind_is_separate(store, clock, make_item) -> None:
    queue = WorkQueue(store, clock=clock)

    result = await queue.enqueue(
        "101", [make_item("7"), make_item("7", kind=ContentKind.DISCUSSION)]
    )

    assert result.added == 2


@pytest.mark.asyncio()
async def test_enqueue_counts_foreign_tenant_items_as_errors(store, clock, make_item) -> None:
    queue = WorkQueue(store, clock=clock)

    result = await queue.enqueue("101", [make_item("1"), make_item("2", tenant_id="202")])

    assert result.to_dict() == {"added": 1, "existing": 0, "errors": 1}


@pytest.mark.asyncio()
async def test_two_processes_share_one_queue(tmp_path, clock, make_item) -> None:
    path = tmp_path / "shared.db"
    store_a, store_b = PipelineStore(path), PipelineStore(path)
    try:
        queue_b = WorkQueue(store_b, succeed, clock=clock)
        inner = []

        async def executor(item):
            # The other process sees the entry as taken while this one runs it
            inner.append(await queue_b.process_entry(entry.id))
            return AnalysisOutcome(success=True)

        queue_a = WorkQueue(store_a, executor, clock=clock)
        await queue_a.enqueue("101", [make_item("1")])
        duplicate = await queue_b.enqueue("101", [make_item("1")])
        entry = only_entry(queue_a)

        processed = await queue_a.process_entry(entry.id)

        assert duplicate.existing == 1
        assert inner == [None]
        assert processed.status == QueueStatus.COMPLETED
        assert queue_b.get_entry(entry.id).attempts == 1
    finally:
        store_a.close()
        store_b.close()


def test_concurrent_enqueue_leaves_one_active_entry(tmp_path, clock, make_item) -> None:
    path = tmp_path / "shared.db"
    workers = 8
    stores = [PipelineStore(path) for _ in range(workers)]
    barrier = threading.Barrier(workers)

    def enqueue_from(store: PipelineStore):
        queue = WorkQueue(store, clock=clock)
        barrier.wait()
        return asyncio.run(queue.enqueue("101", [make_item("1")], requested_by="worker"))

    try:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(enqueue_from, stores))

        assert sum(result.added for result in results) == 1
        assert sum(result.existing for result in results) == workers - 1
        assert sum(result.errors for result in results) == 0
        counts = WorkQueue(stores[0], clock=clock).get_status("101")
        assert counts.pending == 1
        assert counts.total == 1
    finally:
        for store in stores:
            store.close()


@pytest.mark.asyncio()
async def test_recent_completion_is_not_requeued(store, clock, make_item) -> None:
    queue = WorkQueue(store, succeed, staleness_hours=4, clock=clock)
    await queue.enqueue("101", [make_item("1")])
    await queue.process_entry(only_entry(queue).id)

    clock.advance(hours=1)
    result = await queue.enqueue("101", [make_item("1")])

    assert result.existing == 1
    assert only_entry(queue).status == QueueStatus.COMPLETED


@pytest.mark.asyncio()
async def test_stale_completion_is_requeued_fresh(store, clock, make_item) -> None:
    queue = WorkQueue(store, succeed, staleness_hours=4, clock=clock)
    await queue.enqueue("101", [make_item("1")])
    await queue.process_entry(only_entry(queue).id)

    clock.advance(hours=5)
    result = await queue.enqueue("101", [make_item("1")], requested_by="later")

    entry = only_entry(queue)
    assert result.added == 1
    assert entry.status == QueueStatus.PENDING
    assert entry.attempts == 0
    assert entry.completed_at is None
    assert entry.result is None
    assert entry.requested_by == "later"


@pytest.mark.asyncio()
async def test_failed_entry_is_requeued(store, clock, make_item) -> None:
    def fail(item):
        raise RuntimeError("model unavailable")

    queue = WorkQueue(store, fail, max_attempts=1, clock=clock)
    await queue.enqueue("101", [make_item("1")])
    failed = await queue.process_entry(only_entry(queue).id)
    assert failed.status == QueueStatus.FAILED

    result = await queue.enqueue("101", [make_item("1")])

    entry = only_entry(queue)
    assert result.added == 1
    assert entry.status == QueueStatus.PENDING
    assert entry.last_error is None


@pytest.mark.asyncio()
async def test_success_clears_analysis_flag(store, clock, make_item) -> None:
    store.upsert_work_item(make_item("1"), now=clock())
    EligibilityMarker(store, clock=clock).mark_eligible()
    queue = WorkQueue(store, succeed, clock=clock)
    await queue.enqueue("101", store.list_work_items(needs_analysis=True))

    entry = await queue.process_entry(only_entry(queue).id)

    item = store.get_work_item(("101", "1", ContentKind.ASSIGNMENT))
    assert entry.status == QueueStatus.COMPLETED
    assert entry.result == {"activity": "1"}
    assert entry.completed_at == clock()
    assert item.needs_analysis is False
    assert item.analysis_count == 1


@pytest.mark.asyncio()
async def test_retries_until_attempts_exhausted(store, clock, make_item) -> None:
    calls = []

    async def fail(item):
        calls.append(item.activity_id)
        raise RuntimeError("boom")

    queue = WorkQueue(
        store,
        fail,
        max_attempts=3,
        retry_policy=RetryPolicy(strategy=RetryStrategy.IMMEDIATE),
        clock=clock,
    )
    await queue.enqueue("101", [make_item("1")])
    entry_id = only_entry(queue).id

    statuses = [(await queue.process_entry(entry_id)).status for _ in range(3)]

    entry = queue.get_entry(entry_id)
    assert statuses == [QueueStatus.PENDING, QueueStatus.PENDING, QueueStatus.FAILED]
    assert entry.attempts == 3
    assert entry.last_error == "boom"
    assert len(calls) == 3
    assert await queue.process_entry(entry_id) is None


@pytest.mark.asyncio()
async def test_failed_attempt_waits_for_backoff(store, clock, make_item) -> None:
    outcomes = iter([AnalysisOutcome(success=False, error="rate limited"), AnalysisOutcome(success=True)])

    queue = WorkQueue(
        store,
        lambda item: next(outcomes),
        retry_policy=RetryPolicy(
            strategy=RetryStrategy.FIXED_DELAY, base_delay_seconds=60, jitter_factor=0.0
        ),
        clock=clock,
    )
    await queue.enqueue("101", [make_item("1")])
    entry_id = only_entry(queue).id

    retry = await queue.process_entry(entry_id)
    assert retry.status == QueueStatus.PENDING
    assert retry.last_error == "rate limited"
    assert retry.next_eligible_at == clock() + timedelta(seconds=60)

    assert await queue.process_entry(entry_id) is None

    clock.advance(seconds=61)
    done = await queue.process_entry(entry_id)
    assert done.status == QueueStatus.COMPLETED
    assert done.attempts == 2


@pytest.mark.asyncio()
async def test_executor_may_return_plain_dict(store, clock, make_item) -> None:
    queue = WorkQueue(
        store, lambda item: {"success": True, "result": {"score": 9}}, clock=clock
    )
    await queue.enqueue("101", [make_item("1")])

    entry = await queue.process_entry(only_entry(queue).id)

    assert entry.status == QueueStatus.COMPLETED
    assert entry.result == {"score": 9}


@pytest.mark.asyncio()
async def test_unexpected_executor_result_is_a_failure(store, clock, make_item) -> None:
    queue = WorkQueue(store, lambda item: "done", max_attempts=1, clock=clock)
    await queue.enqueue("101", [make_item("1")])

    entry = await queue.process_entry(only_entry(queue).id)

    assert entry.status == QueueStatus.FAILED
    assert "Unexpected executor result" in entry.last_error


@pytest.mark.asyncio()
async def test_analysis_timeout_counts_as_failure(store, clock, make_item) -> None:
    async def slow(item):
        await asyncio.sleep(1)
        return AnalysisOutcome(success=True)

    queue = WorkQueue(store, slow, max_attempts=1, analysis_timeout_seconds=0.05, clock=clock)
    await queue.enqueue("101", [make_item("1")])

    entry = await queue.process_entry(only_entry(queue).id)

    assert entry.status == QueueStatus.FAILED
    assert "timed out" in entry.last_error


@pytest.mark.asyncio()
async def test_pool_processes_everything_then_reports_idle(store, clock, make_item) -> None:
    seen = []

    async def executor(item):
        seen.append(item.activity_id)
        await asyncio.sleep(0)
        return AnalysisOutcome(success=True)

    queue = WorkQueue(store, executor, concurrency=2, submit_stagger_seconds=0.01, clock=clock)
    queue.start()
    try:
        result = await queue.enqueue("101", [make_item(str(n)) for n in range(1, 4)])
        assert result.added == 3
        assert await queue.drain(timeout=5)
    finally:
        await queue.shutdown()

    status = queue.get_status("101")
    assert sorted(seen) == ["1", "2", "3"]
    assert status.completed == 3
    assert status.in_progress is False
    assert queue.outstanding == 0


@pytest.mark.asyncio()
async def test_pool_retries_in_process_before_drain_returns(store, clock, make_item) -> None:
    attempts = []

    def flaky(item):
        attempts.append(item.activity_id)
        if len(attempts) == 1:
            raise ConnectionError("transient")
        return AnalysisOutcome(success=True)

    queue = WorkQueue(
        store,
        flaky,
        submit_stagger_seconds=0,
        retry_policy=RetryPolicy(strategy=RetryStrategy.IMMEDIATE),
        clock=clock,
    )
    queue.start()
    try:
        await queue.enqueue("101", [make_item("1")])
        assert await queue.drain(timeout=5)
    finally:
        await queue.shutdown()

    entry = only_entry(queue)
    assert entry.status == QueueStatus.COMPLETED
    assert entry.attempts == 2


@pytest.mark.asyncio()
async def test_start_picks_up_entries_left_pending(store, clock, make_item) -> None:
    producer = WorkQueue(store, clock=clock)
    await producer.enqueue("101", [make_item("1"), make_item("2")])

    consumer = WorkQueue(store, succeed, submit_stagger_seconds=0, clock=clock)
    consumer.start()
    try:
        assert await consumer.drain(timeout=5)
    finally:
        await consumer.shutdown()

    assert consumer.get_status().completed == 2


def test_start_requires_an_executor(store) -> None:
    with pytest.raises(CollaboratorError):
        WorkQueue(store).start()


@pytest.mark.asyncio()
async def test_recover_stalled_entries(store, clock, make_item) -> None:
    queue = WorkQueue(store, max_attempts=2, stall_timeout_minutes=30, clock=clock)
    await queue.enqueue("101", [make_item("retryable"), make_item("exhausted")])
    entries = {entry.activity_id: entry for entry in queue.list_entries()}
    long_ago = to_iso(clock() - timedelta(hours=1))
    store.execute(CLAIM_ENTRY_SQL, {"id": entries["retryable"].id, "now": long_ago})
    store.execute(CLAIM_ENTRY_SQL, {"id": entries["exhausted"].id, "now": long_ago})
    store.execute("UPDATE queue_entries SET attempts = 2 WHERE id = ?", (entries["exhausted"].id,))

    assert queue.recover_stalled() == 2

    retryable = queue.get_entry(entries["retryable"].id)
    exhausted = queue.get_entry(entries["exhausted"].id)
    assert retryable.status == QueueStatus.PENDING
    assert retryable.attempts == 1
    assert exhausted.status == QueueStatus.FAILED
    assert "stalled" in exhausted.last_error


@pytest.mark.asyncio()
async def test_recent_processing_entry_is_not_stalled(store, clock, make_item) -> None:
    queue = WorkQueue(store, stall_timeout_minutes=30, clock=clock)
    await queue.enqueue("101", [make_item("1")])
    store.execute(CLAIM_ENTRY_SQL, {"id": only_entry(queue).id, "now": to_iso(clock())})

    assert queue.recover_stalled() == 0
    assert only_entry(queue).status == QueueStatus.PROCESSING


@pytest.mark.asyncio()
async def test_cleanup_removes_only_old_completed_entries(store, clock, make_item) -> None:
    queue = WorkQueue(store, succeed, retention_hours=24, clock=clock)
    await queue.enqueue("101", [make_item("done"), make_item("waiting")])
    done = next(e for e in queue.list_entries() if e.activity_id == "done")
    await queue.process_entry(done.id)

    assert queue.cleanup() == 0

    clock.advance(hours=25)
    assert queue.cleanup(older_than_hours=48) == 0
    assert queue.cleanup() == 1
    assert [entry.activity_id for entry in queue.list_entries()] == ["waiting"]


@pytest.mark.asyncio()
async def test_status_and_requester_counts(store, clock, make_item) -> None:
    queue = WorkQueue(store, succeed, clock=clock)
    await queue.enqueue("101", [make_item("1"), make_item("2")], requested_by="batch:a")
    await queue.enqueue("202", [make_item("3", tenant_id="202")], requested_by="batch:b")
    await queue.process_entry(queue.list_entries("101")[0].id)

    assert queue.get_status("101").to_dict() == {
        "pending": 1,
        "processing": 0,
        "completed": 1,
        "failed": 0,
        "total": 2,
        "in_progress": True,
    }
    assert queue.get_status("unknown").total == 0
    assert queue.count_requested_by("batch:a").completed == 1
    assert queue.count_requested_by("batch:b").pending == 1
    assert len(queue.list_entries(status=QueueStatus.PENDING)) == 2


@pytest.mark.asyncio()
async def test_process_entry_ignores_unknown_id(store, clock) -> None:
    queue = WorkQueue(store, succeed, clock=clock)

    assert await queue.process_entry(999) is None
