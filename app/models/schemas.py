from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


# --- Requests ---


class CreateSearchRequest(BaseModel):
    user_id: str
    orientation: str
    product_service: str
    industries: list[str]
    countries: list[str]
    start: bool = False


class StartRequest(BaseModel):
    user_id: str
    foreground: bool = False


class CancelRequest(BaseModel):
    user_id: str | None = None


class RetryRequest(BaseModel):
    user_id: str | None = None
    from_phase: str | None = None
    foreground: bool = False


# --- Responses ---


class SearchResponse(BaseModel):
    id: str
    user_id: str
    orientation: str
    product_service: str
    industries: list[str]
    countries: list[str]
    status: str
    phase: str
    progress_pct: int
    error: str | None = None
    created_at: datetime
    updated_at: datetime


class StartResponse(BaseModel):
    accepted: bool
    duplicate: bool = False
    job_id: str | None = None
    reason: str | None = None
    search: SearchResponse | None = None


class CancelResponse(BaseModel):
    ok: bool
    cancelled: bool
    jobs_failed: int = 0
    tasks_failed: int = 0
    search: SearchResponse


class LatestJob(BaseModel):
    id: str
    status: str
    attempt_count: int


class ProgressResponse(BaseModel):
    search_id: str
    phase: str
    progress_pct: int
    status: str
    error: str | None = None
    updated_at: str | None = None
    counts: dict[str, int]
    latest_job: LatestJob | None = None


class SweepResponse(BaseModel):
    expired_cache_entries: int
    stale_tasks: int
    requeued_tasks: int
    failed_tasks: int
    errors: list[str]


class DispatchResponse(BaseModel):
    processed: int

