"""PostgreSQL store using asyncpg.

Schema and the atomic queue functions live in migrations/001_orchestration.sql.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable

import asyncpg

from app.models.errors import StoreError
from app.models.jobs import CacheEntry, ClaimedJob, Job, JobTask
from app.models.search import ResultKind, Search, SearchStatus
from app.services import logger as log_service
from app.store.base import normalize_search_changes

SEARCH_COLUMNS = (
    "id, user_id, orientation, product_service, industries, countries, "
    "status, phase, progress_pct, error, created_at, updated_at"
)


def _coerce_json(value: Any) -> Any:
    """asyncpg hands jsonb back as text unless a codec is registered."""
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return {}
    return value


def _search_row(record: asyncpg.Record) -> Search:
    return Search.from_row(dict(record))


def _job_row(record: asyncpg.Record | dict[str, Any]) -> Job:
    row = dict(record)
    row["payload"] = _coerce_json(row.get("payload")) or {}
    return Job.from_row(row)


def _result_row(record: asyncpg.Record) -> dict[str, Any]:
    row = dict(record)
    data = _coerce_json(row.pop("data", None)) or {}
    return {
        **data,
        "id": str(row["id"]),
        "search_id": str(row["search_id"]),
        "created_at": row["created_at"].isoformat(),
    }


class PostgresStore:
    def __init__(self, database_url: str, *, min_size: int = 1, max_size: int = 10):
        self.database_url = database_url
        self.min_size = min_size
        self.max_size = max_size
        self._pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        if not self.database_url:
            raise StoreError("Database not configured. Set DATABASE_URL in .env")
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self.database_url,
                min_size=self.min_size,
                max_size=self.max_size,
            )
            log_service.log_db_operation("connect", "pool", "success")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise StoreError("PostgresStore used before connect()")
        return self._pool

    # --- Searches ---

    async def create_search(self, search: Search) -> Search:
        async with self.pool.acquire() as conn:
            result = await conn.fetchrow(
                f"""
                INSERT INTO searches (id, user_id, orientation, product_service, industries,
                                      countries, status, phase, progress_pct, error)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                RETURNING {SEARCH_COLUMNS}
                """,
                search.id,
                search.user_id,
                search.orientation.value,
                search.product_service,
                search.industries,
                search.countries,
                search.status.value,
                search.phase.value,
                search.progress_pct,
                search.error,
            )
            return _search_row(result)

    async def get_search(self, search_id: str) -> Search | None:
        async with self.pool.acquire() as conn:
            result = await conn.fetchrow(
                f"SELECT {SEARCH_COLUMNS} FROM searches WHERE id = $1",
                search_id,
            )
            return _search_row(result) if result else None

    async def update_search(
        self,
        search_id: str,
        changes: dict[str, Any],
        *,
        only_if_status: Iterable[SearchStatus] | None = None,
        progress_at_most: int | None = None,
    ) -> Search | None:
        values = normalize_search_changes(changes)
        params: list[Any] = [search_id]
        assignments = []
        for column, value in values.items():
            params.append(value)
            assignments.append(f"{column} = ${len(params)}")
        assignments.append("updated_at = now()")

        conditions = ["id = $1"]
        if only_if_status is not None:
            params.append([SearchStatus(s).value for s in only_if_status])
            conditions.append(f"status = ANY(${len(params)}::text[])")
        if progress_at_most is not None:
            params.append(progress_at_most)
            conditions.append(f"progress_pct <= ${len(params)}")

        async with self.pool.acquire() as conn:
            result = await conn.fetchrow(
                f"""
                UPDATE searches
                SET {", ".join(assignments)}
                WHERE {" AND ".join(conditions)}
                RETURNING {SEARCH_COLUMNS}
                """,
                *params,
            )
            return _search_row(result) if result else None

    # --- Jobs ---

    async def insert_job(self, job: Job) -> Job:
        async with self.pool.acquire() as conn:
            result = await conn.fetchrow(
                """
                INSERT INTO jobs (id, type, payload, status, run_at, attempt_count, max_attempts)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                RETURNING *
                """,
                job.id,
                job.type,
                json.dumps(job.payload),
                job.status.value,
                job.run_at,
                job.attempt_count,
                job.max_attempts,
            )
            return _job_row(result)

    async def get_job(self, job_id: str) -> Job | None:
        async with self.pool.acquire() as conn:
            result = await conn.fetchrow("SELECT * FROM jobs WHERE id = $1", job_id)
            return _job_row(result) if result else None

    async def claim_job(
        self, worker_id: str, types: list[str] | None, now: datetime
    ) -> ClaimedJob | None:
        # Eligibility uses the database clock; `now` is informational here.
        async with self.pool.acquire() as conn:
            raw = await conn.fetchval("SELECT claim_job($1, $2::text[])", worker_id, types or None)
        claimed = _coerce_json(raw)
        if not claimed:
            return None
        return ClaimedJob(job=Job.from_row(claimed["job"]), task=JobTask.from_row(claimed["task"]))

    async def complete_job(self, job_id: str, now: datetime) -> Job | None:
        async with self.pool.acquire() as conn:
            result = await conn.fetchrow("SELECT * FROM complete_job($1)", job_id)
            return _job_row(result) if result else None

    async def fail_job(
        self, job_id: str, error: str, retry_at: datetime, now: datetime
    ) -> Job | None:
        async with self.pool.acquire() as conn:
            result = await conn.fetchrow("SELECT * FROM fail_job($1, $2, $3)", job_id, error, retry_at)
            return _job_row(result) if result else None

    async def list_open_jobs(self, search_id: str, job_type: str | None = None) -> list[Job]:
        async with self.pool.acquire() as conn:
            results = await conn.fetch(
                """
                SELECT * FROM jobs
                WHERE payload->>'search_id' = $1
                  AND status IN ('queued', 'running')
                  AND ($2::text IS NULL OR type = $2)
                ORDER BY created_at
                """,
                search_id,
                job_type,
            )
            return [_job_row(r) for r in results]

    async def latest_job(self, search_id: str) -> Job | None:
        async with self.pool.acquire() as conn:
            result = await conn.fetchrow(
                """
                SELECT * FROM jobs
                WHERE payload->>'search_id' = $1
                ORDER BY created_at DESC
                LIMIT 1
                """,
                search_id,
            )
            return _job_row(result) if result else None

    async def fail_jobs(self, job_ids: list[str], reason: str) -> int:
        if not job_ids:
            return 0
        async with self.pool.acquire() as conn:
            results = await conn.fetch(
                """
                UPDATE jobs
                SET status = 'failed', last_error = $2, updated_at = now()
                WHERE id = ANY($1::uuid[]) AND status IN ('queued', 'running')
                RETURNING id
                """,
                job_ids,
                reason,
            )
            return len(results)

    async def fail_tasks_for_jobs(self, job_ids: list[str], reason: str) -> int:
        if not job_ids:
            return 0
        async with self.pool.acquire() as conn:
            results = await conn.fetch(
                """
                UPDATE job_tasks
                SET status = 'failed', error = $2, finished_at = coalesce(finished_at, now())
                WHERE job_id = ANY($1::uuid[]) AND status <> 'succeeded'
                RETURNING id
                """,
                job_ids,
                reason,
            )
            return len(results)

    # --- Job tasks ---

    async def list_tasks(self, job_id: str) -> list[JobTask]:
        async with self.pool.acquire() as conn:
            results = await conn.fetch(
                "SELECT * FROM job_tasks WHERE job_id = $1 ORDER BY attempt",
                job_id,
            )
            return [JobTask.from_row(dict(r)) for r in results]

    async def list_stale_tasks(self, started_before: datetime) -> list[JobTask]:
        async with self.pool.acquire() as conn:
            results = await conn.fetch(
                """
                SELECT * FROM job_tasks
                WHERE status = 'running' AND started_at < $1
                ORDER BY started_at
                """,
                started_before,
            )
            return [JobTask.from_row(dict(r)) for r in results]

    async def requeue_stale_task(
        self, task_id: str, started_before: datetime, now: datetime
    ) -> JobTask | None:
        async with self.pool.acquire() as conn:
            result = await conn.fetchrow(
                "SELECT * FROM requeue_stale_task($1, $2)",
                task_id,
                started_before,
            )
            return JobTask.from_row(dict(result)) if result else None

    # --- Idempotency cache ---

    async def reserve_key(
        self, key: str, ttl_at: datetime, now: datetime, payload: Any = None
    ) -> bool:
        async with self.pool.acquire() as conn:
            granted = await conn.fetchval(
                "SELECT reserve_idempotency_key($1, $2, $3::jsonb)",
                key,
                ttl_at,
                json.dumps(payload) if payload is not None else None,
            )
            return bool(granted)

    async def get_cache_entry(self, key: str, now: datetime) -> CacheEntry | None:
        async with self.pool.acquire() as conn:
            result = await conn.fetchrow(
                """
                SELECT key, payload, ttl_at, created_at FROM idempotency_cache
                WHERE key = $1 AND ttl_at > $2
                """,
                key,
                now,
            )
            if not result:
                return None
            return CacheEntry(
                key=result["key"],
                payload=_coerce_json(result["payload"]),
                ttl_at=result["ttl_at"],
                created_at=result["created_at"],
            )

    async def put_cache_entry(self, key: str, payload: Any, ttl_at: datetime) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO idempotency_cache (key, payload, ttl_at)
                VALUES ($1, $2::jsonb, $3)
                ON CONFLICT (key) DO UPDATE
                SET payload = excluded.payload, ttl_at = excluded.ttl_at, created_at = now()
                """,
                key,
                json.dumps(payload),
                ttl_at,
            )

    async def delete_expired_cache_entries(self, now: datetime) -> int:
        async with self.pool.acquire() as conn:
            results = await conn.fetch(
                "DELETE FROM idempotency_cache WHERE ttl_at < $1 RETURNING key",
                now,
            )
            return len(results)

    # --- Stage result sets ---
    # Table names come from the ResultKind enum, never from callers.

    async def insert_results(
        self, kind: ResultKind, search_id: str, rows: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        inserted: list[dict[str, Any]] = []
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                for row in rows:
                    result = await conn.fetchrow(
                        f"""
                        INSERT INTO {kind.value} (search_id, data)
                        VALUES ($1, $2::jsonb)
                        RETURNING id, search_id, data, created_at
                        """,
                        search_id,
                        json.dumps(row, default=str),
                    )
                    inserted.append(_result_row(result))
        return inserted

    async def list_results(self, kind: ResultKind, search_id: str) -> list[dict[str, Any]]:
        async with self.pool.acquire() as conn:
            results = await conn.fetch(
                f"""
                SELECT id, search_id, data, created_at FROM {kind.value}
                WHERE search_id = $1
                ORDER BY created_at
                """,
                search_id,
            )
            return [_result_row(r) for r in results]

    async def count_results(self, kind: ResultKind, search_id: str) -> int:
        async with self.pool.acquire() as conn:
            count = await conn.fetchval(
                f"SELECT count(*) FROM {kind.value} WHERE search_id = $1",
                search_id,
            )
            return int(count or 0)

    async def delete_results(self, kind: ResultKind, search_id: str) -> int:
        async with self.pool.acquire() as conn:
            results = await conn.fetch(
                f"DELETE FROM {kind.value} WHERE search_id = $1 RETURNING id",
                search_id,
            )
            return len(results)
