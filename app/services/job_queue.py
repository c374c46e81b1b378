from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any

from app.config import settings
from app.models.errors import JobPayloadError
from app.models.jobs import ClaimedJob, Job, JobStatus
from app.models.search import utcnow
from app.services import logger as log_service
from app.store.base import Store

MIN_BACKOFF_SECONDS = 5


class JobQueue:
    """Durable job store contract: enqueue, claim, complete, fail.

    Exclusivity of `claim` and the guarded transitions come from the store;
    this layer validates payloads, applies retry policy and logs transitions.
    """

    def __init__(
        self,
        store: Store,
        *,
        default_max_attempts: int | None = None,
        backoff_seconds: int | None = None,
    ):
        self.store = store
        self.default_max_attempts = max(int(default_max_attempts or settings.job_max_attempts), 1)
        self.backoff_seconds = max(
            int(backoff_seconds if backoff_seconds is not None else settings.job_retry_backoff_seconds),
            MIN_BACKOFF_SECONDS,
        )

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        run_at: datetime | None = None,
        max_attempts: int | None = None,
    ) -> Job:
        try:
            # Round-trip so stored payloads are plain JSON, never live objects.
            normalized = json.loads(json.dumps(payload))
        except (TypeError, ValueError) as exc:
            raise JobPayloadError(f"Job payload for {job_type} is not JSON-serializable: {exc}") from exc
        if not isinstance(normalized, dict):
            raise JobPayloadError(f"Job payload for {job_type} must be a JSON object")

        attempts = self.default_max_attempts if max_attempts is None else int(max_attempts)
        if attempts < 1:
            raise JobPayloadError("max_attempts must be at least 1")

        job = Job(
            type=job_type,
            payload=normalized,
            run_at=run_at or utcnow(),
            max_attempts=attempts,
        )
        stored = await self.store.insert_job(job)
        log_service.log_job_transition(stored.id, stored.type, JobStatus.QUEUED.value, run_at=stored.run_at.isoformat())
        return stored

    async def claim(self, worker_id: str, types: list[str] | None = None) -> ClaimedJob | None:
        claimed = await self.store.claim_job(worker_id, types, utcnow())
        if claimed is not None:
            log_service.log_job_transition(
                claimed.job.id,
                claimed.job.type,
                JobStatus.RUNNING.value,
                worker_id=worker_id,
                task_id=claimed.task.id,
                attempt=claimed.task.attempt,
            )
        return claimed

    async def complete(self, job_id: str) -> Job | None:
        job = await self.store.complete_job(job_id, utcnow())
        if job is not None:
            log_service.log_job_transition(job.id, job.type, job.status.value)
        return job

    async def fail(self, job_id: str, error: str) -> Job | None:
        now = utcnow()
        job = await self.store.fail_job(job_id, error, now + timedelta(seconds=self.backoff_seconds), now)
        if job is not None:
            log_service.log_job_transition(
                job.id,
                job.type,
                job.status.value,
                attempt_count=job.attempt_count,
                max_attempts=job.max_attempts,
                error=error[:200],
            )
        return job

    async def get(self, job_id: str) -> Job | None:
        return await self.store.get_job(job_id)
