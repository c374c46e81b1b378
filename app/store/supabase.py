from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any, Iterable

from supabase import Client, create_client

from app.models.errors import StoreError
from app.models.jobs import OPEN_JOB_STATUSES, CacheEntry, ClaimedJob, Job, JobTask, TaskStatus
from app.models.search import ResultKind, Search, SearchStatus, parse_timestamp, utcnow
from app.store.base import normalize_search_changes

OPEN_STATUS_VALUES = [s.value for s in OPEN_JOB_STATUSES]


async def _execute(query: Any) -> Any:
    """Run blocking Supabase query execution in a worker thread."""
    return await asyncio.to_thread(query.execute)


def _coerce_json(value: Any) -> Any:
    """Normalize legacy JSON-string fields."""
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return {}
    return value


def _result_row(row: dict[str, Any]) -> dict[str, Any]:
    data = _coerce_json(row.get("data")) or {}
    return {**data, "id": str(row["id"]), "search_id": str(row["search_id"]), "created_at": row.get("created_at")}


class SupabaseStore:
    """Store over PostgREST. Atomic operations go through the SQL functions
    in migrations/001_orchestration.sql; single-statement conditional
    updates use PostgREST filters.
    """

    def __init__(self, url: str, service_role_key: str):
        self.url = url
        self.service_role_key = service_role_key
        self._client: Client | None = None

    async def connect(self) -> None:
        if not self.url or not self.service_role_key:
            raise StoreError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        if self._client is None:
            self._client = create_client(self.url, self.service_role_key)

    async def close(self) -> None:
        self._client = None

    def client(self) -> Client:
        if self._client is None:
            raise StoreError("SupabaseStore used before connect()")
        return self._client

    # --- Searches ---

    async def create_search(self, search: Search) -> Search:
        row = search.to_dict()
        row.pop("created_at")
        row.pop("updated_at")
        result = await _execute(self.client().table("searches").insert(row))
        return Search.from_row(result.data[0])

    async def get_search(self, search_id: str) -> Search | None:
        result = await _execute(self.client().table("searches").select("*").eq("id", search_id))
        return Search.from_row(result.data[0]) if result.data else None

    async def update_search(
        self,
        search_id: str,
        changes: dict[str, Any],
        *,
        only_if_status: Iterable[SearchStatus] | None = None,
        progress_at_most: int | None = None,
    ) -> Search | None:
        values = normalize_search_changes(changes)
        values["updated_at"] = utcnow().isoformat()
        query = self.client().table("searches").update(values).eq("id", search_id)
        if only_if_status is not None:
            query = query.in_("status", [SearchStatus(s).value for s in only_if_status])
        if progress_at_most is not None:
            query = query.lte("progress_pct", progress_at_most)
        result = await _execute(query)
        return Search.from_row(result.data[0]) if result.data else None

    # --- Jobs ---

    async def insert_job(self, job: Job) -> Job:
        row = {
            "id": job.id,
            "type": job.type,
            "payload": job.payload,
            "status": job.status.value,
            "run_at": job.run_at.isoformat(),
            "attempt_count": job.attempt_count,
            "max_attempts": job.max_attempts,
        }
        result = await _execute(self.client().table("jobs").insert(row))
        return Job.from_row(result.data[0])

    async def get_job(self, job_id: str) -> Job | None:
        result = await _execute(self.client().table("jobs").select("*").eq("id", job_id))
        return Job.from_row(result.data[0]) if result.data else None

    async def claim_job(
        self, worker_id: str, types: list[str] | None, now: datetime
    ) -> ClaimedJob | None:
        result = await _execute(
            self.client().rpc("claim_job", {"worker_id": worker_id, "wanted_types": types or None})
        )
        claimed = _coerce_json(result.data)
        if isinstance(claimed, list):
            claimed = claimed[0] if claimed else None
        if not claimed:
            return None
        return ClaimedJob(job=Job.from_row(claimed["job"]), task=JobTask.from_row(claimed["task"]))

    async def complete_job(self, job_id: str, now: datetime) -> Job | None:
        result = await _execute(self.client().rpc("complete_job", {"p_job_id": job_id}))
        return Job.from_row(result.data[0]) if result.data else None

    async def fail_job(
        self, job_id: str, error: str, retry_at: datetime, now: datetime
    ) -> Job | None:
        result = await _execute(
            self.client().rpc(
                "fail_job",
                {"p_job_id": job_id, "error_text": error, "retry_at": retry_at.isoformat()},
            )
        )
        return Job.from_row(result.data[0]) if result.data else None

    async def list_open_jobs(self, search_id: str, job_type: str | None = None) -> list[Job]:
        query = (
            self.client()
            .table("jobs")
            .select("*")
            .eq("payload->>search_id", search_id)
            .in_("status", OPEN_STATUS_VALUES)
        )
        if job_type is not None:
            query = query.eq("type", job_type)
        result = await _execute(query.order("created_at"))
        return [Job.from_row(r) for r in result.data or []]

    async def latest_job(self, search_id: str) -> Job | None:
        result = await _execute(
            self.client()
            .table("jobs")
            .select("*")
            .eq("payload->>search_id", search_id)
            .order("created_at", desc=True)
            .limit(1)
        )
        return Job.from_row(result.data[0]) if result.data else None

    async def fail_jobs(self, job_ids: list[str], reason: str) -> int:
        if not job_ids:
            return 0
        result = await _execute(
            self.client()
            .table("jobs")
            .update({"status": "failed", "last_error": reason})
            .in_("id", job_ids)
            .in_("status", OPEN_STATUS_VALUES)
        )
        return len(result.data or [])

    async def fail_tasks_for_jobs(self, job_ids: list[str], reason: str) -> int:
        if not job_ids:
            return 0
        result = await _execute(
            self.client()
            .table("job_tasks")
            .update({"status": "failed", "error": reason})
            .in_("job_id", job_ids)
            .neq("status", TaskStatus.SUCCEEDED.value)
        )
        return len(result.data or [])

    # --- Job tasks ---

    async def list_tasks(self, job_id: str) -> list[JobTask]:
        result = await _execute(
            self.client().table("job_tasks").select("*").eq("job_id", job_id).order("attempt")
        )
        return [JobTask.from_row(r) for r in result.data or []]

    async def list_stale_tasks(self, started_before: datetime) -> list[JobTask]:
        result = await _execute(
            self.client()
            .table("job_tasks")
            .select("*")
            .eq("status", TaskStatus.RUNNING.value)
            .lt("started_at", started_before.isoformat())
        )
        return [JobTask.from_row(r) for r in result.data or []]

    async def requeue_stale_task(
        self, task_id: str, started_before: datetime, now: datetime
    ) -> JobTask | None:
        result = await _execute(
            self.client().rpc(
                "requeue_stale_task",
                {"p_task_id": task_id, "p_started_before": started_before.isoformat()},
            )
        )
        return JobTask.from_row(result.data[0]) if result.data else None

    # --- Idempotency cache ---

    async def reserve_key(
        self, key: str, ttl_at: datetime, now: datetime, payload: Any = None
    ) -> bool:
        result = await _execute(
            self.client().rpc(
                "reserve_idempotency_key",
                {"p_key": key, "p_ttl_at": ttl_at.isoformat(), "p_payload": payload},
            )
        )
        return bool(result.data)

    async def get_cache_entry(self, key: str, now: datetime) -> CacheEntry | None:
        result = await _execute(
            self.client()
            .table("idempotency_cache")
            .select("key, payload, ttl_at, created_at")
            .eq("key", key)
            .gt("ttl_at", now.isoformat())
        )
        if not result.data:
            return None
        row = result.data[0]
        return CacheEntry(
            key=row["key"],
            payload=row.get("payload"),
            ttl_at=parse_timestamp(row["ttl_at"]),
            created_at=parse_timestamp(row.get("created_at")),
        )

    async def put_cache_entry(self, key: str, payload: Any, ttl_at: datetime) -> None:
        await _execute(
            self.client()
            .table("idempotency_cache")
            .upsert({"key": key, "payload": payload, "ttl_at": ttl_at.isoformat()})
        )

    async def delete_expired_cache_entries(self, now: datetime) -> int:
        result = await _execute(
            self.client().table("idempotency_cache").delete().lt("ttl_at", now.isoformat())
        )
        return len(result.data or [])

    # --- Stage result sets ---

    async def insert_results(
        self, kind: ResultKind, search_id: str, rows: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        if not rows:
            return []
        payload = [{"search_id": search_id, "data": json.loads(json.dumps(row, default=str))} for row in rows]
        result = await _execute(self.client().table(kind.value).insert(payload))
        return [_result_row(r) for r in result.data or []]

    async def list_results(self, kind: ResultKind, search_id: str) -> list[dict[str, Any]]:
        result = await _execute(
            self.client().table(kind.value).select("*").eq("search_id", search_id).order("created_at")
        )
        return [_result_row(r) for r in result.data or []]

    async def count_results(self, kind: ResultKind, search_id: str) -> int:
        result = await _execute(
            self.client()
            .table(kind.value)
            .select("id", count="exact", head=True)
            .eq("search_id", search_id)
        )
        return int(result.count or 0)

    async def delete_results(self, kind: ResultKind, search_id: str) -> int:
        result = await _execute(self.client().table(kind.value).delete().eq("search_id", search_id))
        return len(result.data or [])
