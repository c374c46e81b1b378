"""In-process store used for local development and the test-suite.

A single asyncio.Lock is held across every check-and-set, which gives the same
exclusivity the SQL backends get from row locks and conditional updates.
"""
from __future__ import annotations

import asyncio
from copy import deepcopy
from dataclasses import replace
from datetime import datetime
from typing import Any, Iterable
from uuid import uuid4

from app.models.jobs import (
    OPEN_JOB_STATUSES,
    CacheEntry,
    ClaimedJob,
    Job,
    JobStatus,
    JobTask,
    TaskStatus,
)
from app.models.search import ResultKind, Search, SearchStatus, SearchPhase, utcnow
from app.store.base import STALE_TASK_ERROR, normalize_search_changes


class MemoryStore:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._searches: dict[str, Search] = {}
        self._jobs: dict[str, Job] = {}
        self._tasks: dict[str, JobTask] = {}
        self._cache: dict[str, CacheEntry] = {}
        self._results: dict[ResultKind, list[dict[str, Any]]] = {kind: [] for kind in ResultKind}

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # --- Searches ---

    async def create_search(self, search: Search) -> Search:
        async with self._lock:
            self._searches[search.id] = replace(search)
            return replace(search)

    async def get_search(self, search_id: str) -> Search | None:
        async with self._lock:
            search = self._searches.get(search_id)
            return replace(search) if search else None

    async def update_search(
        self,
        search_id: str,
        changes: dict[str, Any],
        *,
        only_if_status: Iterable[SearchStatus] | None = None,
        progress_at_most: int | None = None,
    ) -> Search | None:
        values = normalize_search_changes(changes)
        allowed = {SearchStatus(s) for s in only_if_status} if only_if_status is not None else None
        async with self._lock:
            search = self._searches.get(search_id)
            if search is None:
                return None
            if allowed is not None and search.status not in allowed:
                return None
            if progress_at_most is not None and search.progress_pct > progress_at_most:
                return None
            if "status" in values:
                search.status = SearchStatus(values["status"])
            if "phase" in values:
                search.phase = SearchPhase(values["phase"])
            if "progress_pct" in values:
                search.progress_pct = int(values["progress_pct"])
            if "error" in values:
                search.error = values["error"]
            search.updated_at = utcnow()
            return replace(search)

    # --- Jobs ---

    async def insert_job(self, job: Job) -> Job:
        async with self._lock:
            self._jobs[job.id] = replace(job, payload=deepcopy(job.payload))
            return replace(job)

    async def get_job(self, job_id: str) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    async def claim_job(
        self, worker_id: str, types: list[str] | None, now: datetime
    ) -> ClaimedJob | None:
        async with self._lock:
            eligible = [
                job
                for job in self._jobs.values()
                if job.status is JobStatus.QUEUED
                and job.run_at <= now
                and (not types or job.type in types)
            ]
            if not eligible:
                return None
            job = min(eligible, key=lambda j: (j.run_at, j.created_at))
            job.status = JobStatus.RUNNING
            job.claimed_by = worker_id
            job.claimed_at = now
            job.updated_at = now

            task = next(
                (
                    t
                    for t in self._tasks.values()
                    if t.job_id == job.id and t.status is TaskStatus.QUEUED
                ),
                None,
            )
            if task is None:
                task = JobTask(job_id=job.id)
                self._tasks[task.id] = task
            task.status = TaskStatus.RUNNING
            task.attempt = job.attempt_count + 1
            task.started_at = now
            task.finished_at = None
            task.error = None
            return ClaimedJob(job=replace(job), task=replace(task))

    def _running_task(self, job_id: str) -> JobTask | None:
        return next(
            (t for t in self._tasks.values() if t.job_id == job_id and t.status is TaskStatus.RUNNING),
            None,
        )

    async def complete_job(self, job_id: str, now: datetime) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.RUNNING:
                return None
            job.status = JobStatus.DONE
            job.updated_at = now
            task = self._running_task(job_id)
            if task is not None:
                task.status = TaskStatus.SUCCEEDED
                task.finished_at = now
            return replace(job)

    async def fail_job(
        self, job_id: str, error: str, retry_at: datetime, now: datetime
    ) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.RUNNING:
                return None
            job.attempt_count = min(job.attempt_count + 1, job.max_attempts)
            job.last_error = error
            job.updated_at = now
            if job.attempt_count >= job.max_attempts:
                job.status = JobStatus.FAILED
            else:
                job.status = JobStatus.QUEUED
                job.run_at = retry_at
                job.claimed_by = None
                job.claimed_at = None
            task = self._running_task(job_id)
            if task is not None:
                task.status = TaskStatus.FAILED
                task.finished_at = now
                task.error = error
            return replace(job)

    async def list_open_jobs(self, search_id: str, job_type: str | None = None) -> list[Job]:
        async with self._lock:
            return [
                replace(job)
                for job in self._jobs.values()
                if job.status in OPEN_JOB_STATUSES
                and job.search_id == search_id
                and (job_type is None or job.type == job_type)
            ]

    async def latest_job(self, search_id: str) -> Job | None:
        async with self._lock:
            jobs = [job for job in self._jobs.values() if job.search_id == search_id]
            if not jobs:
                return None
            return replace(max(jobs, key=lambda j: j.created_at))

    async def fail_jobs(self, job_ids: list[str], reason: str) -> int:
        async with self._lock:
            changed = 0
            for job_id in job_ids:
                job = self._jobs.get(job_id)
                if job is None or job.status not in OPEN_JOB_STATUSES:
                    continue
                job.status = JobStatus.FAILED
                job.last_error = reason
                job.updated_at = utcnow()
                changed += 1
            return changed

    async def fail_tasks_for_jobs(self, job_ids: list[str], reason: str) -> int:
        wanted = set(job_ids)
        async with self._lock:
            changed = 0
            for task in self._tasks.values():
                if task.job_id in wanted and task.status is not TaskStatus.SUCCEEDED:
                    task.status = TaskStatus.FAILED
                    task.error = reason
                    task.finished_at = task.finished_at or utcnow()
                    changed += 1
            return changed

    # --- Job tasks ---

    async def list_tasks(self, job_id: str) -> list[JobTask]:
        async with self._lock:
            return [replace(t) for t in self._tasks.values() if t.job_id == job_id]

    async def list_stale_tasks(self, started_before: datetime) -> list[JobTask]:
        async with self._lock:
            return [
                replace(t)
                for t in self._tasks.values()
                if t.status is TaskStatus.RUNNING
                and t.started_at is not None
                and t.started_at < started_before
            ]

    async def requeue_stale_task(
        self, task_id: str, started_before: datetime, now: datetime
    ) -> JobTask | None:
        async with self._lock:
            task = self._tasks.get(task_id)
            if (
                task is None
                or task.status is not TaskStatus.RUNNING
                or task.started_at is None
                or task.started_at >= started_before
            ):
                return None
            job = self._jobs.get(task.job_id)
            if job is not None and job.status is JobStatus.RUNNING:
                job.attempt_count = min(job.attempt_count + 1, job.max_attempts)
                job.last_error = STALE_TASK_ERROR
                job.updated_at = now
                if job.attempt_count >= job.max_attempts:
                    job.status = JobStatus.FAILED
                else:
                    job.status = JobStatus.QUEUED
                    job.run_at = now
                    job.claimed_by = None
                    job.claimed_at = None
            if job is None or job.status is JobStatus.QUEUED:
                task.status = TaskStatus.QUEUED
                task.started_at = None
            else:
                task.status = TaskStatus.FAILED
                task.finished_at = now
                task.error = job.last_error or STALE_TASK_ERROR
            return replace(task)

    # --- Idempotency cache ---

    async def reserve_key(
        self, key: str, ttl_at: datetime, now: datetime, payload: Any = None
    ) -> bool:
        async with self._lock:
            existing = self._cache.get(key)
            if existing is not None and existing.ttl_at > now:
                return False
            self._cache[key] = CacheEntry(key=key, ttl_at=ttl_at, payload=payload, created_at=now)
            return True

    async def get_cache_entry(self, key: str, now: datetime) -> CacheEntry | None:
        async with self._lock:
            entry = self._cache.get(key)
            if entry is None or entry.ttl_at <= now:
                return None
            return replace(entry)

    async def put_cache_entry(self, key: str, payload: Any, ttl_at: datetime) -> None:
        async with self._lock:
            self._cache[key] = CacheEntry(key=key, ttl_at=ttl_at, payload=payload)

    async def delete_expired_cache_entries(self, now: datetime) -> int:
        async with self._lock:
            expired = [key for key, entry in self._cache.items() if entry.ttl_at < now]
            for key in expired:
                del self._cache[key]
            return len(expired)

    # --- Stage result sets ---

    async def insert_results(
        self, kind: ResultKind, search_id: str, rows: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        inserted: list[dict[str, Any]] = []
        async with self._lock:
            for row in rows:
                stored = {
                    **deepcopy(row),
                    "id": row.get("id") or str(uuid4()),
                    "search_id": search_id,
                    "created_at": utcnow().isoformat(),
                }
                self._results[kind].append(stored)
                inserted.append(deepcopy(stored))
        return inserted

    async def list_results(self, kind: ResultKind, search_id: str) -> list[dict[str, Any]]:
        async with self._lock:
            return [deepcopy(r) for r in self._results[kind] if r["search_id"] == search_id]

    async def count_results(self, kind: ResultKind, search_id: str) -> int:
        async with self._lock:
            return sum(1 for r in self._results[kind] if r["search_id"] == search_id)

    async def delete_results(self, kind: ResultKind, search_id: str) -> int:
        async with self._lock:
            kept = [r for r in self._results[kind] if r["search_id"] != search_id]
            removed = len(self._results[kind]) - len(kept)
            self._results[kind] = kept
            return removed
