"""Tests for the durable job queue over the in-memory store."""
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from app.models.errors import JobPayloadError
from app.models.jobs import ORCHESTRATE_SEARCH, JobStatus, TaskStatus
from app.models.search import utcnow
from app.services.job_queue import JobQueue
from app.store.memory import MemoryStore


@pytest.fixture
def queue(store: MemoryStore) -> JobQueue:
    return JobQueue(store, default_max_attempts=3, backoff_seconds=30)


@pytest.mark.asyncio
async def test_enqueue_then_claim_creates_running_task(queue: JobQueue, store: MemoryStore):
    job = await queue.enqueue(ORCHESTRATE_SEARCH, {"search_id": "s-1"})
    assert job.status == JobStatus.QUEUED
    assert job.max_attempts == 3

    claimed = await queue.claim("worker-a")

    assert claimed is not None
    assert claimed.job.id == job.id
    assert claimed.job.status == JobStatus.RUNNING
    assert claimed.job.claimed_by == "worker-a"
    assert claimed.task.status == TaskStatus.RUNNING
    assert claimed.task.started_at is not None
    assert claimed.task.attempt == 1
    assert len(await store.list_tasks(job.id)) == 1


@pytest.mark.asyncio
async def test_claim_on_empty_store_returns_none(queue: JobQueue):
    assert await queue.claim("worker-a") is None


@pytest.mark.asyncio
async def test_claim_skips_jobs_scheduled_in_the_future(queue: JobQueue):
    await queue.enqueue("later", {}, run_at=utcnow() + timedelta(minutes=5))
    assert await queue.claim("worker-a") is None


@pytest.mark.asyncio
async def test_claim_respects_type_filter(queue: JobQueue):
    await queue.enqueue("other", {})
    assert await queue.claim("worker-a", [ORCHESTRATE_SEARCH]) is None
    assert await queue.claim("worker-a", ["other"]) is not None


@pytest.mark.asyncio
async def test_enqueue_rejects_non_serializable_payload(queue: JobQueue):
    with pytest.raises(JobPayloadError):
        await queue.enqueue(ORCHESTRATE_SEARCH, {"search_id": object()})


@pytest.mark.asyncio
async def test_enqueue_rejects_zero_attempts(queue: JobQueue):
    with pytest.raises(JobPayloadError):
        await queue.enqueue(ORCHESTRATE_SEARCH, {}, max_attempts=0)


@pytest.mark.asyncio
async def test_concurrent_claims_hand_out_a_single_job_once(queue: JobQueue):
    """N concurrent claimants, one eligible job: exactly one winner."""
    await queue.enqueue(ORCHESTRATE_SEARCH, {"search_id": "s-1"})

    results = await asyncio.gather(*(queue.claim(f"worker-{i}") for i in range(20)))

    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert results.count(None) == 19


@pytest.mark.asyncio
async def test_completed_job_is_never_reclaimed(queue: JobQueue):
    job = await queue.enqueue(ORCHESTRATE_SEARCH, {})
    await queue.claim("worker-a")
    done = await queue.complete(job.id)

    assert done.status == JobStatus.DONE
    assert await queue.claim("worker-b") is None
    tasks = await queue.store.list_tasks(job.id)
    assert [t.status for t in tasks] == [TaskStatus.SUCCEEDED]


@pytest.mark.asyncio
async def test_complete_of_job_not_running_is_a_lost_race(queue: JobQueue):
    job = await queue.enqueue(ORCHESTRATE_SEARCH, {})
    assert await queue.complete(job.id) is None


@pytest.mark.asyncio
async def test_fail_requeues_with_backoff_until_attempts_exhausted(queue: JobQueue):
    job = await queue.enqueue(ORCHESTRATE_SEARCH, {}, max_attempts=2)

    await queue.claim("worker-a")
    first = await queue.fail(job.id, "provider timeout")
    assert first.status == JobStatus.QUEUED
    assert first.attempt_count == 1
    assert first.run_at > utcnow() + timedelta(seconds=20)
    assert first.last_error == "provider timeout"

    # Not yet due because of the backoff.
    assert await queue.claim("worker-a") is None

    stored = queue.store._jobs[job.id]
    stored.run_at = utcnow() - timedelta(seconds=1)

    second_claim = await queue.claim("worker-b")
    assert second_claim.task.attempt == 2
    second = await queue.fail(job.id, "provider timeout again")
    assert second.status == JobStatus.FAILED
    assert second.attempt_count == 2
    assert second.attempt_count <= second.max_attempts


@pytest.mark.asyncio
async def test_backoff_has_a_floor(store: MemoryStore):
    queue = JobQueue(store, backoff_seconds=0)
    assert queue.backoff_seconds == 5
