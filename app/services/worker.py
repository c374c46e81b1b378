"""Job worker: claims due jobs and routes them to handlers by type."""
from __future__ import annotations

import asyncio
import socket
from typing import Awaitable, Callable
from uuid import uuid4

from loguru import logger

from app.config import settings
from app.models.jobs import ClaimedJob
from app.services.job_queue import JobQueue

JobHandler = Callable[[ClaimedJob], Awaitable[None]]


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{uuid4().hex[:6]}"


class JobWorker:
    def __init__(
        self,
        queue: JobQueue,
        handlers: dict[str, JobHandler] | None = None,
        *,
        worker_id: str | None = None,
        batch_size: int | None = None,
        poll_interval_seconds: float | None = None,
    ):
        self.queue = queue
        self.handlers: dict[str, JobHandler] = dict(handlers or {})
        self.worker_id = worker_id or default_worker_id()
        self.batch_size = max(int(batch_size or settings.dispatch_batch_size), 1)
        self.poll_interval_seconds = (
            settings.worker_poll_interval_seconds if poll_interval_seconds is None else poll_interval_seconds
        )
        self._task: asyncio.Task | None = None
        self._running = False

    def register(self, job_type: str, handler: JobHandler) -> None:
        self.handlers[job_type] = handler

    async def _process(self, claimed: ClaimedJob) -> bool:
        job = claimed.job
        handler = self.handlers.get(job.type)
        if handler is None:
            await self.queue.fail(job.id, f"No handler registered for job type '{job.type}'")
            return False
        try:
            await handler(claimed)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(f"Job {job.id} ({job.type}) failed; scheduling retry if attempts remain: {exc}")
            await self.queue.fail(job.id, str(exc) or type(exc).__name__)
            return False
        await self.queue.complete(job.id)
        return True

    async def dispatch_once(self) -> int:
        """Claim up to batch_size due jobs, run them concurrently, return how many were claimed."""
        claimed: list[ClaimedJob] = []
        for _ in range(self.batch_size):
            job = await self.queue.claim(self.worker_id)
            if job is None:
                break
            claimed.append(job)
        if claimed:
            results = await asyncio.gather(*(self._process(c) for c in claimed), return_exceptions=True)
            for outcome, item in zip(results, claimed):
                if isinstance(outcome, Exception):
                    logger.opt(exception=outcome).error(f"Worker could not settle job {item.job.id}")
            logger.info(f"Worker {self.worker_id} processed {len(claimed)} job(s)")
        return len(claimed)

    async def _loop(self) -> None:
        while self._running:
            try:
                processed = await self.dispatch_once()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.exception(f"Worker tick failed: {exc}")
                processed = 0
            if not processed:
                await asyncio.sleep(self.poll_interval_seconds)

    async def start(self) -> None:
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Job worker {self.worker_id} started for types {sorted(self.handlers)}")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info(f"Job worker {self.worker_id} stopped")
