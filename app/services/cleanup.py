"""Execution wrapper for best-effort work whose failure must never propagate."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from loguru import logger


class CleanupOutcome:
    """Filled in when the wrapped block exits; `failed` tells callers whether to count it."""

    def __init__(self) -> None:
        self.error: BaseException | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@asynccontextmanager
async def non_fatal(operation: str, **context: Any) -> AsyncIterator[CleanupOutcome]:
    """Run a block, log any Exception with `operation` and `context`, and swallow it.

    Cancellation (asyncio.CancelledError) is a BaseException and still propagates.
    """
    outcome = CleanupOutcome()
    try:
        yield outcome
    except Exception as exc:
        outcome.error = exc
        details = {"operation": operation, "error": str(exc), **context}
        logger.opt(exception=exc).warning(f"NON_FATAL_FAILURE: {details}")
