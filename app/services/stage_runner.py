"""Uniform invoke/observe/error wrapper around one generation stage."""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx
from loguru import logger
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from app.config import settings
from app.models.errors import ErrorKind, StageError, TerminalStageError
from app.models.search import ResultKind, Search
from app.services import logger as log_service
from app.services import streaming
from app.services.idempotency import IdempotencyCache
from app.services.progress import ProgressReporter
from app.store.base import Store

# Client errors that a later attempt can still succeed on.
RETRYABLE_STATUS_CODES = frozenset({408, 429})


class ResultRecorder:
    """Persists stage rows and announces each one to progress subscribers."""

    def __init__(self, store: Store, progress: ProgressReporter, search_id: str):
        self.store = store
        self.progress = progress
        self.search_id = search_id

    async def record(self, kind: ResultKind, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if not rows:
            return []
        inserted = await self.store.insert_results(kind, self.search_id, rows)
        for row in inserted:
            self.progress.publish(streaming.record_inserted(self.search_id, kind, row))
        return inserted

    async def read(self, kind: ResultKind) -> list[dict[str, Any]]:
        return await self.store.list_results(kind, self.search_id)

    async def reset(self, kinds: tuple[ResultKind, ...]) -> None:
        """Drop rows a previous attempt left so a re-run overwrites rather than duplicates."""
        for kind in kinds:
            removed = await self.store.delete_results(kind, self.search_id)
            if removed:
                logger.info(f"Cleared {removed} {kind.value} rows for search {self.search_id} before re-run")


@dataclass(slots=True)
class StageContext:
    search: Search
    recorder: ResultRecorder
    cache: IdempotencyCache | None = None
    extras: dict[str, Any] = field(default_factory=dict)


StageFn = Callable[[StageContext], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class Stage:
    """A named stage and the result kinds it owns."""

    name: str
    run: StageFn
    kinds: tuple[ResultKind, ...] = ()


def _status_code(exc: BaseException) -> int | None:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    code = getattr(exc, "status_code", None)
    return code if isinstance(code, int) else None


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, StageError):
        return exc.kind
    if isinstance(exc, (TerminalStageError, ValueError, KeyError, TypeError)):
        return ErrorKind.TERMINAL
    code = _status_code(exc)
    if code is not None and 400 <= code < 500 and code not in RETRYABLE_STATUS_CODES:
        return ErrorKind.TERMINAL
    return ErrorKind.TRANSIENT


def _is_transient(exc: BaseException) -> bool:
    return classify_error(exc) is ErrorKind.TRANSIENT


class StageRunner:
    def __init__(
        self,
        *,
        attempts: int | None = None,
        min_wait_seconds: float | None = None,
        max_wait_seconds: float | None = None,
    ):
        self.attempts = max(int(attempts or settings.stage_retry_attempts), 1)
        self.min_wait_seconds = (
            settings.stage_retry_min_wait_seconds if min_wait_seconds is None else min_wait_seconds
        )
        self.max_wait_seconds = (
            settings.stage_retry_max_wait_seconds if max_wait_seconds is None else max_wait_seconds
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.min_wait_seconds, min=self.min_wait_seconds, max=self.max_wait_seconds),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )

    async def invoke(self, stage: Stage, ctx: StageContext) -> None:
        """Run `stage`, retrying transient errors; raise StageError on final failure."""
        search_id = ctx.search.id
        ctx.recorder.progress.publish(streaming.stage_started(search_id, stage.name))
        log_service.log_stage_call(search_id, stage.name, "started")
        started = time.monotonic()
        try:
            async for attempt in self._retrying():
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            f"Retrying stage {stage.name} for search {search_id} "
                            f"(attempt {attempt.retry_state.attempt_number}/{self.attempts})"
                        )
                    await ctx.recorder.reset(stage.kinds)
                    await stage.run(ctx)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = self._failed(stage, ctx, exc, started)
            if error is exc:
                raise
            raise error from exc

        duration_ms = int((time.monotonic() - started) * 1000)
        log_service.log_stage_call(search_id, stage.name, "completed", duration_ms=duration_ms)
        ctx.recorder.progress.publish(
            streaming.stage_completed(search_id, stage.name, duration_ms=duration_ms)
        )

    def _failed(self, stage: Stage, ctx: StageContext, exc: BaseException, started: float) -> StageError:
        kind = classify_error(exc)
        duration_ms = int((time.monotonic() - started) * 1000)
        log_service.log_stage_call(ctx.search.id, stage.name, "failed", duration_ms=duration_ms, error=str(exc))
        ctx.recorder.progress.publish(streaming.stage_failed(ctx.search.id, stage.name, str(exc), kind.value))
        if isinstance(exc, StageError):
            return exc
        return StageError(stage.name, kind, exc)
