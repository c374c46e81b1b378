from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from app.models.events import EventType
from app.models.jobs import ORCHESTRATE_SEARCH, JobStatus, TaskStatus
from app.models.search import SearchPhase, SearchStatus, utcnow
from app.services.job_queue import JobQueue
from app.services.progress import ProgressBroker, ProgressReporter
from app.services.reaper import Reaper
from app.store.memory import MemoryStore

from conftest import crm_search


@pytest.fixture
def queue(store: MemoryStore) -> JobQueue:
    return JobQueue(store, default_max_attempts=3)


@pytest.fixture
def reaper(store: MemoryStore) -> Reaper:
    return Reaper(store, stale_task_minutes=20, interval_seconds=60)


@pytest.mark.asyncio
async def test_sweep_on_empty_store_is_a_noop(reaper: Reaper):
    report = await reaper.sweep()
    assert report.to_dict() == {
        "expired_cache_entries": 0,
        "stale_tasks": 0,
        "requeued_tasks": 0,
        "failed_tasks": 0,
        "failed_searches": 0,
        "errors": [],
    }


@pytest.mark.asyncio
async def test_task_running_past_threshold_is_requeued(reaper: Reaper, queue: JobQueue, store: MemoryStore):
    job = await queue.enqueue(ORCHESTRATE_SEARCH, {"search_id": "s-1"})
    claimed = await queue.claim("worker-that-died")

    report = await reaper.sweep(now=utcnow() + timedelta(minutes=21))

    assert report.stale_tasks == 1
    assert report.requeued_tasks == 1
    [task] = await store.list_tasks(job.id)
    assert task.id == claimed.task.id
    assert task.status == TaskStatus.QUEUED
    assert task.started_at is None
    requeued = await store.get_job(job.id)
    assert requeued.status == JobStatus.QUEUED
    assert requeued.attempt_count == 1


@pytest.mark.asyncio
async def test_recent_task_is_left_alone(reaper: Reaper, queue: JobQueue, store: MemoryStore):
    job = await queue.enqueue(ORCHESTRATE_SEARCH, {"search_id": "s-1"})
    await queue.claim("worker-a")

    report = await reaper.sweep(now=utcnow() + timedelta(minutes=5))

    assert report.stale_tasks == 0
    [task] = await store.list_tasks(job.id)
    assert task.status == TaskStatus.RUNNING


@pytest.mark.asyncio
async def test_requeued_task_is_picked_up_by_next_claim(reaper: Reaper, queue: JobQueue):
    job = await queue.enqueue(ORCHESTRATE_SEARCH, {"search_id": "s-1"})
    first = await queue.claim("worker-a")
    await reaper.sweep(now=utcnow() + timedelta(minutes=21))

    # The requeue makes the job due at the sweep's clock.
    queue.store._jobs[job.id].run_at = utcnow() - timedelta(seconds=1)
    second = await queue.claim("worker-b")

    assert second.task.id == first.task.id
    assert second.task.attempt == 2


@pytest.mark.asyncio
async def test_stale_task_on_last_attempt_fails_its_job_and_search(queue: JobQueue, store: MemoryStore):
    progress = ProgressReporter(store, ProgressBroker())
    reaper = Reaper(store, progress, stale_task_minutes=20, interval_seconds=60)
    search = await store.create_search(crm_search(phase=SearchPhase.PERSONAS, progress_pct=25))
    events = progress.broker.open(search.id)
    job = await queue.enqueue(ORCHESTRATE_SEARCH, {"search_id": search.id}, max_attempts=1)
    await queue.claim("worker-a")

    report = await reaper.sweep(now=utcnow() + timedelta(minutes=30))

    assert report.failed_tasks == 1
    assert report.requeued_tasks == 0
    assert report.failed_searches == 1
    assert (await store.get_job(job.id)).status == JobStatus.FAILED
    [task] = await store.list_tasks(job.id)
    assert task.status == TaskStatus.FAILED
    failed = await store.get_search(search.id)
    assert failed.status == SearchStatus.FAILED
    assert failed.progress_pct == 0
    assert "ran out of attempts" in failed.error
    assert await store.list_open_jobs(search.id) == []
    event = events.get_nowait()
    assert event.event == EventType.SEARCH_FAILED
    assert event.data["phase"] == "personas"


@pytest.mark.asyncio
async def test_exhausted_job_leaves_a_finished_search_alone(reaper: Reaper, queue: JobQueue, store: MemoryStore):
    search = await store.create_search(crm_search(status=SearchStatus.CANCELLED))
    await queue.enqueue(ORCHESTRATE_SEARCH, {"search_id": search.id}, max_attempts=1)
    await queue.claim("worker-a")

    report = await reaper.sweep(now=utcnow() + timedelta(minutes=30))

    assert report.failed_tasks == 1
    assert report.failed_searches == 0
    assert (await store.get_search(search.id)).status == SearchStatus.CANCELLED


@pytest.mark.asyncio
async def test_cache_expiry_failure_does_not_skip_stale_recovery(
    reaper: Reaper, queue: JobQueue, store: MemoryStore
):
    await queue.enqueue(ORCHESTRATE_SEARCH, {"search_id": "s-1"})
    await queue.claim("worker-a")
    store.delete_expired_cache_entries = AsyncMock(side_effect=RuntimeError("relation does not exist"))

    report = await reaper.sweep(now=utcnow() + timedelta(minutes=21))

    assert report.requeued_tasks == 1
    assert len(report.errors) == 1
    assert report.errors[0].startswith("expire_cache")


@pytest.mark.asyncio
async def test_sweep_expires_idempotency_entries(reaper: Reaper, store: MemoryStore):
    now = utcnow()
    await store.reserve_key("orchestrate:s-1", now - timedelta(seconds=5), now - timedelta(seconds=65))

    report = await reaper.sweep(now=now)

    assert report.expired_cache_entries == 1


@pytest.mark.asyncio
async def test_stop_after_start_clears_background_task(store: MemoryStore):
    reaper = Reaper(store, stale_task_minutes=20, interval_seconds=3600)

    reaper.start()
    await reaper.stop()

    assert reaper._task is None
