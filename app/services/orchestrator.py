"""Stage sequencer: drives a Search through its phases.

Every phase write is a conditional update (still in progress, never lowering
progress), so a cancellation that lands mid-stage stops the run at the next
transition instead of being overwritten.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from loguru import logger

from app.models.errors import (
    ErrorKind,
    InvalidSearchError,
    SearchNotFoundError,
    SearchOwnershipError,
    SearchStateError,
    StageError,
)
from app.models.jobs import ORCHESTRATE_SEARCH, ClaimedJob, Job
from app.models.search import (
    PHASE_PROGRESS,
    Search,
    SearchPhase,
    SearchStatus,
    phase_index,
)
from app.services import logger as log_service
from app.services import streaming
from app.services.cleanup import non_fatal
from app.services.idempotency import IdempotencyCache, Reservation
from app.services.job_queue import JobQueue
from app.services.progress import ProgressReporter
from app.services.stage_runner import ResultRecorder, StageContext, StageRunner
from app.stages.registry import StagePlan, default_stage_plan
from app.store.base import Store

IN_PROGRESS_ONLY = (SearchStatus.IN_PROGRESS,)

# Phases a retry may keep; everything after the kept phase re-runs.
RETRYABLE_PHASES = (
    SearchPhase.STARTING,
    SearchPhase.PERSONAS,
    SearchPhase.BUSINESSES,
    SearchPhase.DECISION_MAKERS,
)


@dataclass
class StartResult:
    accepted: bool
    duplicate: bool = False
    search: Search | None = None
    job_id: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": self.accepted,
            "duplicate": self.duplicate,
            "job_id": self.job_id,
            "reason": self.reason,
            "search": self.search.to_dict() if self.search else None,
        }


def phase_for_progress(progress_pct: int) -> SearchPhase:
    """Last happy-path phase whose progress mark `progress_pct` has reached."""
    reached = SearchPhase.STARTING
    for phase in RETRYABLE_PHASES:
        if progress_pct >= PHASE_PROGRESS[phase]:
            reached = phase
    return reached


class SearchOrchestrator:
    def __init__(
        self,
        store: Store,
        progress: ProgressReporter,
        queue: JobQueue,
        idempotency: IdempotencyCache,
        *,
        stages: StagePlan | None = None,
        runner: StageRunner | None = None,
    ):
        self.store = store
        self.progress = progress
        self.queue = queue
        self.idempotency = idempotency
        self.stages = stages or default_stage_plan()
        self.runner = runner or StageRunner()
        self._active: set[str] = set()

    def is_active(self, search_id: str) -> bool:
        return search_id in self._active

    # --- Triggers ---

    async def _load_owned(self, search_id: str, user_id: str | None) -> Search:
        search = await self.store.get_search(search_id)
        if search is None:
            raise SearchNotFoundError(search_id)
        if user_id is not None and search.user_id != user_id:
            raise SearchOwnershipError(f"Search {search_id} does not belong to user {user_id}")
        return search

    async def _running_elsewhere(self, search_id: str) -> str | None:
        """Describe an active or queued run of this search, if there is one."""
        if self.is_active(search_id):
            return "run already active in this process"
        open_jobs = await self.store.list_open_jobs(search_id, ORCHESTRATE_SEARCH)
        if open_jobs:
            return f"orchestration job {open_jobs[0].id} is {open_jobs[0].status.value}"
        return None

    async def _dispatch(self, search: Search, user_id: str, foreground: bool) -> StartResult:
        if foreground:
            final = await self.run(search.id)
            return StartResult(accepted=True, search=final)
        job = await self.queue.enqueue(ORCHESTRATE_SEARCH, {"search_id": search.id, "user_id": user_id})
        return StartResult(accepted=True, search=search, job_id=job.id)

    async def start_orchestration(self, search_id: str, user_id: str, *, foreground: bool = False) -> StartResult:
        """Trigger the pipeline for an existing Search, absorbing duplicate triggers."""
        search = await self._load_owned(search_id, user_id)
        if search.status.is_terminal:
            raise SearchStateError(f"Search {search_id} is {search.status.value}; use retry to run it again")

        busy = await self._running_elsewhere(search_id)
        if busy:
            log_service.log_event("orchestration_duplicate", busy, search_id=search_id)
            return StartResult(accepted=False, duplicate=True, search=search, reason=busy)

        reservation = await self.idempotency.reserve(f"orchestrate:{search_id}", payload={"user_id": user_id})
        if reservation is Reservation.ALREADY_RESERVED:
            log_service.log_event("orchestration_duplicate", "start already reserved", search_id=search_id)
            return StartResult(accepted=False, duplicate=True, search=search, reason="start already requested")

        log_service.log_event("orchestration_start", "accepted", search_id=search_id, foreground=foreground)
        return await self._dispatch(search, user_id, foreground)

    async def retry(
        self,
        search_id: str,
        *,
        user_id: str | None = None,
        from_phase: SearchPhase | str | None = None,
        foreground: bool = False,
    ) -> StartResult:
        """Re-run a Search from its last completed phase (or an earlier one) without redoing the rest."""
        search = await self._load_owned(search_id, user_id)

        keep: SearchPhase | None = None
        if from_phase is not None:
            try:
                keep = SearchPhase(from_phase)
            except ValueError as exc:
                raise InvalidSearchError(f"Unknown phase: {from_phase}") from exc
            if keep not in RETRYABLE_PHASES:
                raise InvalidSearchError(
                    f"from_phase must be one of {[p.value for p in RETRYABLE_PHASES]}, got {keep.value}"
                )

        if search.status is SearchStatus.IN_PROGRESS:
            busy = await self._running_elsewhere(search_id)
            if busy:
                raise SearchStateError(f"Search {search_id} is still running: {busy}")
            # Orphaned run: resume where it stopped; progress must not move backwards.
            reservation = await self.idempotency.reserve(f"retry:{search_id}", payload={"resume": True})
            if reservation is Reservation.ALREADY_RESERVED:
                return StartResult(accepted=False, duplicate=True, search=search, reason="retry already requested")
            log_service.log_event("orchestration_retry", f"resuming orphaned run at {search.phase.value}", search_id=search_id)
            return await self._dispatch(search, user_id or search.user_id, foreground)

        if search.status is SearchStatus.COMPLETED:
            reached = SearchPhase.DECISION_MAKERS
        elif search.status is SearchStatus.CANCELLED or search.phase not in RETRYABLE_PHASES:
            reached = phase_for_progress(search.progress_pct)
        else:
            reached = search.phase
        if keep is None or phase_index(keep) > phase_index(reached):
            keep = reached

        reservation = await self.idempotency.reserve(f"retry:{search_id}", payload={"from_phase": keep.value})
        if reservation is Reservation.ALREADY_RESERVED:
            return StartResult(accepted=False, duplicate=True, search=search, reason="retry already requested")

        reset = await self.store.update_search(
            search_id,
            {
                "status": SearchStatus.IN_PROGRESS,
                "phase": keep,
                "progress_pct": PHASE_PROGRESS[keep],
                "error": None,
            },
            only_if_status=(search.status,),
        )
        if reset is None:
            current = await self.store.get_search(search_id)
            return StartResult(accepted=False, duplicate=True, search=current, reason="search changed concurrently")

        log_service.log_event(
            "orchestration_retry",
            f"resuming after {keep.value}",
            search_id=search_id,
            previous_status=search.status.value,
        )
        self.progress.publish(streaming.progress(reset))
        return await self._dispatch(reset, user_id or reset.user_id, foreground)

    async def handle_job(self, claimed: ClaimedJob) -> None:
        """Worker entry point for `orchestrate_search` jobs."""
        job: Job = claimed.job
        search_id = job.search_id
        if not search_id:
            raise InvalidSearchError(f"Job {job.id} has no search_id in its payload")
        final_attempt = job.attempt_count + 1 >= job.max_attempts
        await self.run(search_id, final_attempt=final_attempt)

    # --- Execution ---

    async def run(self, search_id: str, *, final_attempt: bool = True) -> Search | None:
        """Drive one Search to a terminal state (or to the next retry).

        Stage errors never escape, except a transient one on a non-final job
        attempt, which is re-raised so the job queue can schedule a retry.
        """
        if self.is_active(search_id):
            logger.warning(f"Search {search_id} already has an active run; skipping")
            return await self.store.get_search(search_id)

        self._active.add(search_id)
        try:
            return await self._run(search_id, final_attempt)
        finally:
            self._active.discard(search_id)

    async def _run(self, search_id: str, final_attempt: bool) -> Search | None:
        search = await self.store.get_search(search_id)
        if search is None:
            raise SearchNotFoundError(search_id)
        if search.status is not SearchStatus.IN_PROGRESS:
            logger.info(f"Search {search_id} is {search.status.value}; nothing to run")
            return search

        try:
            if search.phase is SearchPhase.STARTING:
                search = await self._advance(search_id, SearchPhase.STARTING)
                if search is None:
                    return await self._stopped(search_id)

            ctx = StageContext(
                search=search,
                recorder=ResultRecorder(self.store, self.progress, search_id),
                cache=self.idempotency,
            )
            for target, execute in (
                (SearchPhase.PERSONAS, self._run_personas),
                (SearchPhase.BUSINESSES, self._run_business_discovery),
                (SearchPhase.DECISION_MAKERS, self._run_dm_discovery),
                (SearchPhase.MARKET_INSIGHTS, self._run_market_insights),
            ):
                if phase_index(ctx.search.phase) >= phase_index(target):
                    continue
                current = await self.store.get_search(search_id)
                if current is None or current.status is not SearchStatus.IN_PROGRESS:
                    return await self._stopped(search_id)
                ctx.search = current

                await execute(ctx)

                advanced = await self._advance(search_id, target)
                if advanced is None:
                    return await self._stopped(search_id)
                ctx.search = advanced

            completed = await self._advance(search_id, SearchPhase.COMPLETED, status=SearchStatus.COMPLETED)
            if completed is None:
                return await self._stopped(search_id)
            log_service.log_event("orchestration_completed", "search completed", search_id=search_id)
            self.progress.publish(streaming.search_completed(completed))
            return completed
        except asyncio.CancelledError:
            raise
        except StageError as exc:
            if exc.is_transient and not final_attempt:
                logger.warning(f"Transient failure for search {search_id}, job will retry: {exc}")
                raise
            return await self._fail(search_id, str(exc))
        except Exception as exc:
            logger.exception(f"Orchestration error for search {search_id}: {exc}")
            if not final_attempt:
                raise StageError("orchestrator", ErrorKind.TRANSIENT, exc) from exc
            return await self._fail(search_id, f"orchestrator failed: {exc}")

    async def _run_personas(self, ctx: StageContext) -> None:
        outcomes = await asyncio.gather(
            self.runner.invoke(self.stages.business_personas, ctx),
            self.runner.invoke(self.stages.dm_personas, ctx),
            return_exceptions=True,
        )
        errors = [o for o in outcomes if isinstance(o, BaseException)]
        if not errors:
            return
        for error in errors:
            if not isinstance(error, Exception):
                raise error
        # Both persona stages stand or fall together; a terminal failure wins.
        stage_errors = [e for e in errors if isinstance(e, StageError)]
        terminal = [e for e in stage_errors if not e.is_transient]
        raise (terminal or stage_errors or errors)[0]

    async def _run_business_discovery(self, ctx: StageContext) -> None:
        await self.runner.invoke(self.stages.business_discovery, ctx)

    async def _run_dm_discovery(self, ctx: StageContext) -> None:
        await self.runner.invoke(self.stages.dm_discovery, ctx)

    async def _run_market_insights(self, ctx: StageContext) -> None:
        await self.runner.invoke(self.stages.market_insights, ctx)

    async def _advance(
        self,
        search_id: str,
        phase: SearchPhase,
        *,
        status: SearchStatus | None = None,
    ) -> Search | None:
        """Conditionally record a phase transition; None means the search left in_progress."""
        progress_pct = PHASE_PROGRESS[phase]
        changes: dict[str, Any] = {"phase": phase, "progress_pct": progress_pct}
        if status is not None:
            changes["status"] = status
        updated = await self.store.update_search(
            search_id,
            changes,
            only_if_status=IN_PROGRESS_ONLY,
            progress_at_most=progress_pct,
        )
        if updated is not None:
            logger.info(f"Search {search_id} -> {phase.value} ({progress_pct}%)")
            self.progress.publish(streaming.progress(updated))
        return updated

    async def _stopped(self, search_id: str) -> Search | None:
        search = await self.store.get_search(search_id)
        status = search.status.value if search else "missing"
        log_service.log_event("orchestration_stopped", f"search is {status}", search_id=search_id)
        return search

    async def _fail(self, search_id: str, message: str) -> Search | None:
        """Mark the search failed, keeping its last completed phase."""
        changes = {"status": SearchStatus.FAILED, "progress_pct": 0, "error": message[:1000]}
        try:
            failed = await self.store.update_search(search_id, changes, only_if_status=IN_PROGRESS_ONLY)
            if failed is None:
                return await self._stopped(search_id)
            log_service.log_event(
                "orchestration_failed", message, search_id=search_id, phase=failed.phase.value
            )
            self.progress.publish(streaming.search_failed(search_id, message, failed.phase.value))
            return failed
        except Exception as exc:
            logger.exception(f"Failed to record failure for search {search_id}: {exc}")

        async with non_fatal("orchestrator.secondary_failure_write", search_id=search_id):
            await self.store.update_search(
                search_id,
                {"status": SearchStatus.FAILED, "progress_pct": 0, "error": message[:200]},
                only_if_status=IN_PROGRESS_ONLY,
            )
        async with non_fatal("orchestrator.publish_failure", search_id=search_id):
            self.progress.publish(streaming.search_failed(search_id, message))
        return None
