from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Orientation(str, Enum):
    CUSTOMER = "customer"
    SUPPLIER = "supplier"


class SearchStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not SearchStatus.IN_PROGRESS


class SearchPhase(str, Enum):
    STARTING = "starting"
    PERSONAS = "personas"
    BUSINESSES = "businesses"
    DECISION_MAKERS = "decision_makers"
    MARKET_INSIGHTS = "market_insights"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Ordered happy path; failed/cancelled sit outside it.
PHASE_ORDER: tuple[SearchPhase, ...] = (
    SearchPhase.STARTING,
    SearchPhase.PERSONAS,
    SearchPhase.BUSINESSES,
    SearchPhase.DECISION_MAKERS,
    SearchPhase.MARKET_INSIGHTS,
    SearchPhase.COMPLETED,
)

PHASE_PROGRESS: dict[SearchPhase, int] = {
    SearchPhase.STARTING: 5,
    SearchPhase.PERSONAS: 25,
    SearchPhase.BUSINESSES: 60,
    SearchPhase.DECISION_MAKERS: 85,
    SearchPhase.MARKET_INSIGHTS: 100,
    SearchPhase.COMPLETED: 100,
}


def phase_index(phase: SearchPhase) -> int:
    """Position of `phase` on the happy path, or -1 for failed/cancelled."""
    try:
        return PHASE_ORDER.index(phase)
    except ValueError:
        return -1


class ResultKind(str, Enum):
    BUSINESS_PERSONAS = "business_personas"
    DECISION_MAKER_PERSONAS = "decision_maker_personas"
    BUSINESSES = "businesses"
    DECISION_MAKERS = "decision_makers"
    MARKET_INSIGHTS = "market_insights"


@dataclass(slots=True)
class Search:
    user_id: str
    orientation: Orientation
    product_service: str
    industries: list[str] = field(default_factory=list)
    countries: list[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid4()))
    status: SearchStatus = SearchStatus.IN_PROGRESS
    phase: SearchPhase = SearchPhase.STARTING
    progress_pct: int = 0
    error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "orientation": self.orientation.value,
            "product_service": self.product_service,
            "industries": list(self.industries),
            "countries": list(self.countries),
            "status": self.status.value,
            "phase": self.phase.value,
            "progress_pct": self.progress_pct,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Search":
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            orientation=Orientation(row["orientation"]),
            product_service=row.get("product_service") or "",
            industries=list(row.get("industries") or []),
            countries=list(row.get("countries") or []),
            status=SearchStatus(row.get("status") or SearchStatus.IN_PROGRESS.value),
            phase=SearchPhase(row.get("phase") or SearchPhase.STARTING.value),
            progress_pct=int(row.get("progress_pct") or 0),
            error=row.get("error"),
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
        )


def parse_timestamp(value: Any) -> datetime:
    """Accept datetimes from asyncpg and ISO strings from PostgREST."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return utcnow()
