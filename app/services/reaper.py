"""Periodic maintenance: expire idempotency entries and recover abandoned tasks."""
from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any

from loguru import logger

from app.config import settings
from app.models.jobs import JobStatus, TaskStatus
from app.models.search import SearchStatus, utcnow
from app.services import logger as log_service
from app.services import streaming
from app.services.cleanup import non_fatal
from app.services.progress import ProgressReporter
from app.store.base import STALE_TASK_ERROR, Store


@dataclass
class SweepReport:
    expired_cache_entries: int = 0
    stale_tasks: int = 0
    requeued_tasks: int = 0
    failed_tasks: int = 0
    failed_searches: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class Reaper:
    def __init__(
        self,
        store: Store,
        progress: ProgressReporter | None = None,
        *,
        stale_task_minutes: int | None = None,
        interval_seconds: int | None = None,
    ):
        self.store = store
        self.progress = progress
        self.stale_after = timedelta(
            minutes=stale_task_minutes if stale_task_minutes is not None else settings.stale_task_minutes
        )
        self.interval_seconds = interval_seconds or settings.reaper_interval_seconds
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    async def sweep(self, now: datetime | None = None) -> SweepReport:
        """One pass. Each step is isolated so a failure in one never skips the other."""
        now = now or utcnow()
        report = SweepReport()

        async with non_fatal("reaper.expire_cache") as outcome:
            report.expired_cache_entries = await self.store.delete_expired_cache_entries(now)
        if outcome.failed:
            report.errors.append(f"expire_cache: {outcome.error}")

        async with non_fatal("reaper.requeue_stale_tasks") as outcome:
            started_before = now - self.stale_after
            stale = await self.store.list_stale_tasks(started_before)
            report.stale_tasks = len(stale)
            for task in stale:
                async with non_fatal("reaper.requeue_task", task_id=task.id, job_id=task.job_id) as task_outcome:
                    healed = await self.store.requeue_stale_task(task.id, started_before, now)
                    if healed is None:
                        continue
                    if healed.status is TaskStatus.QUEUED:
                        report.requeued_tasks += 1
                    else:
                        report.failed_tasks += 1
                        if await self._fail_owning_search(task.job_id):
                            report.failed_searches += 1
                    log_service.log_event(
                        "stale_task_recovered",
                        f"task {healed.status.value}",
                        task_id=task.id,
                        job_id=task.job_id,
                    )
                if task_outcome.failed:
                    report.errors.append(f"requeue_task {task.id}: {task_outcome.error}")
        if outcome.failed:
            report.errors.append(f"requeue_stale_tasks: {outcome.error}")

        log_service.log_event("reaper_sweep", "sweep finished", **report.to_dict())
        return report

    async def _fail_owning_search(self, job_id: str) -> bool:
        """Fail the in-progress search behind a job that has run out of attempts."""
        job = await self.store.get_job(job_id)
        if job is None or job.status is not JobStatus.FAILED or not job.search_id:
            return False
        message = f"Search job ran out of attempts ({job.last_error or STALE_TASK_ERROR})"
        failed = await self.store.update_search(
            job.search_id,
            {"status": SearchStatus.FAILED, "progress_pct": 0, "error": message},
            only_if_status=(SearchStatus.IN_PROGRESS,),
        )
        if failed is None:
            return False
        log_service.log_event("stale_search_failed", message, search_id=failed.id, job_id=job_id)
        if self.progress is not None:
            self.progress.publish(streaming.search_failed(failed.id, message, failed.phase.value))
        return True

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            await self.sweep()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    def start(self) -> None:
        if self._task is None:
            self._stopping.clear()
            self._task = asyncio.create_task(self._loop())
            logger.info(f"Reaper started (every {self.interval_seconds}s, stale after {self.stale_after})")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Reaper stopped")
