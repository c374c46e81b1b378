from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from app.models.search import parse_timestamp, utcnow


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class TaskStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


OPEN_JOB_STATUSES = (JobStatus.QUEUED, JobStatus.RUNNING)

ORCHESTRATE_SEARCH = "orchestrate_search"


@dataclass(slots=True)
class Job:
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    status: JobStatus = JobStatus.QUEUED
    run_at: datetime = field(default_factory=utcnow)
    attempt_count: int = 0
    max_attempts: int = 3
    last_error: str | None = None
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def search_id(self) -> str | None:
        value = self.payload.get("search_id")
        return str(value) if value else None

    @property
    def attempts_remaining(self) -> int:
        return max(self.max_attempts - self.attempt_count, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "status": self.status.value,
            "run_at": self.run_at.isoformat(),
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "last_error": self.last_error,
            "claimed_by": self.claimed_by,
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Job":
        return cls(
            id=str(row["id"]),
            type=row["type"],
            payload=dict(row.get("payload") or {}),
            status=JobStatus(row.get("status") or JobStatus.QUEUED.value),
            run_at=parse_timestamp(row.get("run_at")),
            attempt_count=int(row.get("attempt_count") or 0),
            max_attempts=int(row.get("max_attempts") or 3),
            last_error=row.get("last_error"),
            claimed_by=row.get("claimed_by"),
            claimed_at=parse_timestamp(row["claimed_at"]) if row.get("claimed_at") else None,
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
        )


@dataclass(slots=True)
class JobTask:
    job_id: str
    id: str = field(default_factory=lambda: str(uuid4()))
    status: TaskStatus = TaskStatus.RUNNING
    attempt: int = 1
    started_at: datetime | None = field(default_factory=utcnow)
    finished_at: datetime | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "status": self.status.value,
            "attempt": self.attempt,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "JobTask":
        return cls(
            id=str(row["id"]),
            job_id=str(row["job_id"]),
            status=TaskStatus(row.get("status") or TaskStatus.QUEUED.value),
            attempt=int(row.get("attempt") or 1),
            started_at=parse_timestamp(row["started_at"]) if row.get("started_at") else None,
            finished_at=parse_timestamp(row["finished_at"]) if row.get("finished_at") else None,
            error=row.get("error"),
        )


@dataclass(slots=True)
class ClaimedJob:
    job: Job
    task: JobTask


@dataclass(slots=True)
class CacheEntry:
    key: str
    ttl_at: datetime
    payload: Any = None
    created_at: datetime = field(default_factory=utcnow)
