"""Progress reporting: durable snapshots plus a per-search event stream.

Stages publish every row they write and the orchestrator publishes every
transition, so the snapshot counts and the stream never disagree about
what changed.
"""
from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from loguru import logger

from app.models.errors import SearchNotFoundError
from app.models.events import SSEEvent
from app.models.search import ResultKind
from app.services import streaming
from app.store.base import Store

DEFAULT_SUBSCRIBER_BUFFER = 256


class ProgressBroker:
    """In-process fan-out of SSEEvents keyed by search id."""

    def __init__(self, buffer_size: int = DEFAULT_SUBSCRIBER_BUFFER):
        self.buffer_size = buffer_size
        self._subscribers: dict[str, set[asyncio.Queue[SSEEvent]]] = defaultdict(set)

    def publish(self, event: SSEEvent) -> None:
        """Deliver without blocking; a full subscriber loses its oldest event."""
        for queue in list(self._subscribers.get(event.search_id, ())):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(event)

    def open(self, search_id: str) -> asyncio.Queue[SSEEvent]:
        queue: asyncio.Queue[SSEEvent] = asyncio.Queue(maxsize=self.buffer_size)
        self._subscribers[search_id].add(queue)
        return queue

    def close(self, search_id: str, queue: asyncio.Queue[SSEEvent]) -> None:
        subscribers = self._subscribers.get(search_id)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[search_id]

    def subscriber_count(self, search_id: str) -> int:
        return len(self._subscribers.get(search_id, ()))


@dataclass(slots=True)
class ProgressSnapshot:
    search_id: str
    phase: str
    progress_pct: int
    status: str
    error: str | None = None
    updated_at: str | None = None
    counts: dict[str, int] = field(default_factory=dict)
    latest_job: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "search_id": self.search_id,
            "phase": self.phase,
            "progress_pct": self.progress_pct,
            "status": self.status,
            "error": self.error,
            "updated_at": self.updated_at,
            "counts": dict(self.counts),
            "latest_job": self.latest_job,
        }


class ProgressReporter:
    def __init__(self, store: Store, broker: ProgressBroker):
        self.store = store
        self.broker = broker

    async def get_progress(self, search_id: str) -> ProgressSnapshot:
        search = await self.store.get_search(search_id)
        if search is None:
            raise SearchNotFoundError(search_id)

        kinds = list(ResultKind)
        totals = await asyncio.gather(*(self.store.count_results(kind, search_id) for kind in kinds))
        job = await self.store.latest_job(search_id)
        return ProgressSnapshot(
            search_id=search.id,
            phase=search.phase.value,
            progress_pct=search.progress_pct,
            status=search.status.value,
            error=search.error,
            updated_at=search.updated_at.isoformat(),
            counts={kind.value: total for kind, total in zip(kinds, totals)},
            latest_job=(
                {"id": job.id, "status": job.status.value, "attempt_count": job.attempt_count}
                if job
                else None
            ),
        )

    def publish(self, event: SSEEvent) -> None:
        self.broker.publish(event)

    async def subscribe(self, search_id: str, *, include_snapshot: bool = True) -> AsyncIterator[SSEEvent]:
        """Yield events for one search until a terminal event (or the search is already terminal)."""
        queue = self.broker.open(search_id)
        try:
            if include_snapshot:
                snapshot = await self.get_progress(search_id)
                yield streaming.snapshot(search_id, snapshot.to_dict())
                if snapshot.status != "in_progress":
                    return
            while True:
                event = await queue.get()
                yield event
                if event.event.is_terminal:
                    return
        finally:
            self.broker.close(search_id, queue)
            logger.debug(f"Progress subscriber closed for search {search_id}")
