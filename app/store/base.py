from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Protocol

from app.models.jobs import CacheEntry, ClaimedJob, Job, JobTask
from app.models.search import ResultKind, Search, SearchStatus

# Keys update_search accepts; anything else is a programming error.
SEARCH_MUTABLE_FIELDS = frozenset({"status", "phase", "progress_pct", "error"})

STALE_TASK_ERROR = "abandoned: running past staleness threshold"


class Store(Protocol):
    """Persistence contract shared by the memory, postgres and supabase backends.

    Every method that changes state conditionally (claim, reserve, guarded
    search updates, job completion) is atomic with respect to concurrent
    callers. Methods return None, False or 0 when the condition did not hold;
    losing a race is not an error.
    """

    async def connect(self) -> None: ...
    async def close(self) -> None: ...

    # --- Searches ---
    async def create_search(self, search: Search) -> Search: ...
    async def get_search(self, search_id: str) -> Search | None: ...
    async def update_search(
        self,
        search_id: str,
        changes: dict[str, Any],
        *,
        only_if_status: Iterable[SearchStatus] | None = None,
        progress_at_most: int | None = None,
    ) -> Search | None: ...

    # --- Jobs ---
    async def insert_job(self, job: Job) -> Job: ...
    async def get_job(self, job_id: str) -> Job | None: ...
    async def claim_job(
        self, worker_id: str, types: list[str] | None, now: datetime
    ) -> ClaimedJob | None: ...
    async def complete_job(self, job_id: str, now: datetime) -> Job | None: ...
    async def fail_job(
        self, job_id: str, error: str, retry_at: datetime, now: datetime
    ) -> Job | None: ...
    async def list_open_jobs(self, search_id: str, job_type: str | None = None) -> list[Job]: ...
    async def latest_job(self, search_id: str) -> Job | None: ...
    async def fail_jobs(self, job_ids: list[str], reason: str) -> int: ...
    async def fail_tasks_for_jobs(self, job_ids: list[str], reason: str) -> int: ...

    # --- Job tasks ---
    async def list_tasks(self, job_id: str) -> list[JobTask]: ...
    async def list_stale_tasks(self, started_before: datetime) -> list[JobTask]: ...
    async def requeue_stale_task(
        self, task_id: str, started_before: datetime, now: datetime
    ) -> JobTask | None: ...

    # --- Idempotency cache ---
    async def reserve_key(
        self, key: str, ttl_at: datetime, now: datetime, payload: Any = None
    ) -> bool: ...
    async def get_cache_entry(self, key: str, now: datetime) -> CacheEntry | None: ...
    async def put_cache_entry(self, key: str, payload: Any, ttl_at: datetime) -> None: ...
    async def delete_expired_cache_entries(self, now: datetime) -> int: ...

    # --- Stage result sets ---
    async def insert_results(
        self, kind: ResultKind, search_id: str, rows: list[dict[str, Any]]
    ) -> list[dict[str, Any]]: ...
    async def list_results(self, kind: ResultKind, search_id: str) -> list[dict[str, Any]]: ...
    async def count_results(self, kind: ResultKind, search_id: str) -> int: ...
    async def delete_results(self, kind: ResultKind, search_id: str) -> int: ...


def normalize_search_changes(changes: dict[str, Any]) -> dict[str, Any]:
    """Validate update keys and flatten enums to their stored values."""
    unknown = set(changes) - SEARCH_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported search fields: {sorted(unknown)}")
    return {k: getattr(v, "value", v) for k, v in changes.items()}
