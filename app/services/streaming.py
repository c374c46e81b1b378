from __future__ import annotations

from typing import Any

from app.models.events import EventType, SSEEvent
from app.models.search import ResultKind, Search


def snapshot(search_id: str, data: dict[str, Any]) -> SSEEvent:
    return SSEEvent(event=EventType.SNAPSHOT, search_id=search_id, data=data)


def progress(search: Search) -> SSEEvent:
    """Emit the durable phase/progress of a Search after a transition."""
    return SSEEvent(
        event=EventType.PROGRESS,
        search_id=search.id,
        data={
            "phase": search.phase.value,
            "progress_pct": search.progress_pct,
            "status": search.status.value,
        },
    )


def stage_started(search_id: str, stage: str, **kwargs: Any) -> SSEEvent:
    return SSEEvent(event=EventType.STAGE_STARTED, search_id=search_id, data={"stage": stage, **kwargs})


def stage_completed(search_id: str, stage: str, **kwargs: Any) -> SSEEvent:
    return SSEEvent(event=EventType.STAGE_COMPLETED, search_id=search_id, data={"stage": stage, **kwargs})


def stage_failed(search_id: str, stage: str, error: str, kind: str) -> SSEEvent:
    return SSEEvent(
        event=EventType.STAGE_FAILED,
        search_id=search_id,
        data={"stage": stage, "error": error, "kind": kind},
    )


def record_inserted(search_id: str, kind: ResultKind, record: dict[str, Any]) -> SSEEvent:
    return SSEEvent(
        event=EventType.RECORD_INSERTED,
        search_id=search_id,
        data={"kind": kind.value, "record": record},
    )


def search_completed(search: Search) -> SSEEvent:
    return SSEEvent(
        event=EventType.SEARCH_COMPLETED,
        search_id=search.id,
        data={"phase": search.phase.value, "progress_pct": search.progress_pct},
    )


def search_failed(search_id: str, message: str, phase: str | None = None) -> SSEEvent:
    data: dict[str, Any] = {"message": message}
    if phase:
        data["phase"] = phase
    return SSEEvent(event=EventType.SEARCH_FAILED, search_id=search_id, data=data)


def search_cancelled(search_id: str) -> SSEEvent:
    return SSEEvent(event=EventType.SEARCH_CANCELLED, search_id=search_id, data={})
