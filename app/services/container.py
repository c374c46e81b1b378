"""Wires the store handle into every component. One container per process."""
from __future__ import annotations

from dataclasses import dataclass

from app.config import Settings, settings as default_settings
from app.models.jobs import ORCHESTRATE_SEARCH
from app.services.cancellation import CancellationHandler
from app.services.idempotency import IdempotencyCache
from app.services.job_queue import JobQueue
from app.services.orchestrator import SearchOrchestrator
from app.services.progress import ProgressBroker, ProgressReporter
from app.services.reaper import Reaper
from app.services.stage_runner import StageRunner
from app.services.worker import JobWorker
from app.stages.registry import StagePlan
from app.store.base import Store
from app.store.factory import create_store


@dataclass
class Services:
    store: Store
    progress: ProgressReporter
    queue: JobQueue
    idempotency: IdempotencyCache
    orchestrator: SearchOrchestrator
    cancellation: CancellationHandler
    reaper: Reaper
    worker: JobWorker


def build_services(
    store: Store | None = None,
    *,
    config: Settings | None = None,
    stages: StagePlan | None = None,
    runner: StageRunner | None = None,
) -> Services:
    config = config or default_settings
    store = store or create_store(config)
    progress = ProgressReporter(store, ProgressBroker())
    queue = JobQueue(
        store,
        default_max_attempts=config.job_max_attempts,
        backoff_seconds=config.job_retry_backoff_seconds,
    )
    idempotency = IdempotencyCache(store, default_ttl_seconds=config.idempotency_ttl_seconds)
    runner = runner or StageRunner(
        attempts=config.stage_retry_attempts,
        min_wait_seconds=config.stage_retry_min_wait_seconds,
        max_wait_seconds=config.stage_retry_max_wait_seconds,
    )
    orchestrator = SearchOrchestrator(store, progress, queue, idempotency, stages=stages, runner=runner)
    worker = JobWorker(
        queue,
        {ORCHESTRATE_SEARCH: orchestrator.handle_job},
        batch_size=config.dispatch_batch_size,
        poll_interval_seconds=config.worker_poll_interval_seconds,
    )
    return Services(
        store=store,
        progress=progress,
        queue=queue,
        idempotency=idempotency,
        orchestrator=orchestrator,
        cancellation=CancellationHandler(store, progress),
        reaper=Reaper(
            store,
            progress,
            stale_task_minutes=config.stale_task_minutes,
            interval_seconds=config.reaper_interval_seconds,
        ),
        worker=worker,
    )
