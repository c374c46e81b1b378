from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    SNAPSHOT = "snapshot"
    PROGRESS = "progress"
    STAGE_STARTED = "stage_started"
    STAGE_COMPLETED = "stage_completed"
    STAGE_FAILED = "stage_failed"
    RECORD_INSERTED = "record_inserted"
    SEARCH_COMPLETED = "search_completed"
    SEARCH_FAILED = "search_failed"
    SEARCH_CANCELLED = "search_cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            EventType.SEARCH_COMPLETED,
            EventType.SEARCH_FAILED,
            EventType.SEARCH_CANCELLED,
        )


@dataclass
class SSEEvent:
    event: EventType
    search_id: str
    data: dict[str, Any] = field(default_factory=dict)

    def payload(self) -> dict[str, Any]:
        return {"search_id": self.search_id, **self.data}
