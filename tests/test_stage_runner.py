from __future__ import annotations

import httpx
import pytest
import pytest_asyncio

from app.models.errors import ErrorKind, StageError, TerminalStageError
from app.models.events import EventType
from app.models.search import ResultKind
from app.services.stage_runner import ResultRecorder, Stage, StageContext, StageRunner, classify_error

from conftest import crm_search, fast_runner


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://google.serper.dev/places")
    response = httpx.Response(code, request=request)
    return httpx.HTTPStatusError(f"HTTP {code}", request=request, response=response)


@pytest.mark.parametrize(
    "exc, expected",
    [
        (TerminalStageError("no personas"), ErrorKind.TERMINAL),
        (ValueError("bad count"), ErrorKind.TERMINAL),
        (_status_error(401), ErrorKind.TERMINAL),
        (_status_error(429), ErrorKind.TRANSIENT),
        (_status_error(503), ErrorKind.TRANSIENT),
        (httpx.ReadTimeout("slow"), ErrorKind.TRANSIENT),
        (RuntimeError("unknown"), ErrorKind.TRANSIENT),
    ],
)
def test_classify_error(exc, expected):
    assert classify_error(exc) is expected


@pytest_asyncio.fixture
async def ctx(services):
    search = await services.store.create_search(crm_search())
    return StageContext(search=search, recorder=ResultRecorder(services.store, services.progress, search.id))


@pytest.mark.asyncio
async def test_invoke_publishes_start_and_completion(services, ctx):
    events = services.progress.broker.open(ctx.search.id)

    async def write_rows(c: StageContext) -> None:
        await c.recorder.record(ResultKind.BUSINESSES, [{"name": "Acme"}])

    await fast_runner().invoke(Stage("business_discovery", write_rows, (ResultKind.BUSINESSES,)), ctx)

    kinds = [events.get_nowait().event for _ in range(events.qsize())]
    assert kinds == [EventType.STAGE_STARTED, EventType.RECORD_INSERTED, EventType.STAGE_COMPLETED]


@pytest.mark.asyncio
async def test_retry_overwrites_rows_from_failed_attempt(services, ctx):
    attempts = []

    async def half_written(c: StageContext) -> None:
        attempts.append(1)
        await c.recorder.record(ResultKind.BUSINESSES, [{"name": f"Attempt {len(attempts)}"}])
        if len(attempts) == 1:
            raise httpx.ConnectError("dropped")

    await fast_runner().invoke(Stage("business_discovery", half_written, (ResultKind.BUSINESSES,)), ctx)

    rows = await services.store.list_results(ResultKind.BUSINESSES, ctx.search.id)
    assert [r["name"] for r in rows] == ["Attempt 2"]


@pytest.mark.asyncio
async def test_exhausted_retries_raise_transient_stage_error(ctx):
    async def always_down(c: StageContext) -> None:
        raise httpx.ConnectError("down")

    with pytest.raises(StageError) as info:
        await fast_runner().invoke(Stage("market_insights", always_down), ctx)

    assert info.value.is_transient
    assert info.value.stage == "market_insights"
    assert isinstance(info.value.cause, httpx.ConnectError)


@pytest.mark.asyncio
async def test_terminal_error_fails_fast(services, ctx):
    calls = []
    events = services.progress.broker.open(ctx.search.id)

    async def misconfigured(c: StageContext) -> None:
        calls.append(1)
        raise TerminalStageError("SERPER_API_KEY is not configured")

    with pytest.raises(StageError) as info:
        await StageRunner(attempts=5, min_wait_seconds=0, max_wait_seconds=0).invoke(
            Stage("business_discovery", misconfigured), ctx
        )

    assert len(calls) == 1
    assert info.value.kind is ErrorKind.TERMINAL
    failed = [e for e in (events.get_nowait() for _ in range(events.qsize())) if e.event == EventType.STAGE_FAILED]
    assert failed[0].data["kind"] == "terminal"
