from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from app.models.errors import SearchNotFoundError, SearchOwnershipError
from app.models.search import Search, SearchPhase, SearchStatus
from app.services import logger as log_service
from app.services import streaming
from app.services.cleanup import non_fatal
from app.services.progress import ProgressReporter
from app.store.base import Store

CANCELLED_REASON = "cancelled"


@dataclass
class CancelResult:
    search: Search
    cancelled: bool
    jobs_failed: int = 0
    tasks_failed: int = 0


class CancellationHandler:
    """Signal-and-sweep cancellation.

    Only the Search row update can fail the call. The job and task sweep is
    best-effort; an in-flight stage is not interrupted and the orchestrator
    notices the status at its next transition.
    """

    def __init__(self, store: Store, progress: ProgressReporter):
        self.store = store
        self.progress = progress

    async def cancel(self, search_id: str, *, user_id: str | None = None) -> CancelResult:
        current = await self.store.get_search(search_id)
        if current is None:
            raise SearchNotFoundError(search_id)
        if user_id is not None and current.user_id != user_id:
            raise SearchOwnershipError(f"Search {search_id} does not belong to user {user_id}")

        updated = await self.store.update_search(
            search_id,
            {"status": SearchStatus.CANCELLED, "phase": SearchPhase.CANCELLED},
            only_if_status=(SearchStatus.IN_PROGRESS,),
        )
        if updated is None:
            latest = await self.store.get_search(search_id)
            if latest is None:
                raise SearchNotFoundError(search_id)
            logger.info(f"Cancel for search {search_id} ignored; already {latest.status.value}")
            return CancelResult(search=latest, cancelled=False)

        log_service.log_event("search_cancelled", "search cancelled", search_id=search_id)
        result = CancelResult(search=updated, cancelled=True)

        async with non_fatal("cancellation.publish", search_id=search_id):
            self.progress.publish(streaming.search_cancelled(search_id))

        async with non_fatal("cancellation.sweep_jobs", search_id=search_id):
            open_jobs = await self.store.list_open_jobs(search_id)
            job_ids = [job.id for job in open_jobs]
            if job_ids:
                result.jobs_failed = await self.store.fail_jobs(job_ids, CANCELLED_REASON)
                result.tasks_failed = await self.store.fail_tasks_for_jobs(job_ids, CANCELLED_REASON)
                for job in open_jobs:
                    log_service.log_job_transition(job.id, job.type, "failed", reason=CANCELLED_REASON)
        return result
