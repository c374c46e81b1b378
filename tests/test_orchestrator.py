"""Tests for the stage sequencer: happy path, failures, cancellation, resume and retry."""
from __future__ import annotations

import asyncio
from collections import Counter
from datetime import timedelta

import httpx
import pytest

from app.models.errors import SearchOwnershipError, SearchStateError, TerminalStageError
from app.models.events import EventType
from app.models.jobs import JobStatus
from app.models.search import ResultKind, SearchPhase, SearchStatus, utcnow
from app.services.stage_runner import StageContext
from app.store.memory import MemoryStore

from conftest import (
    crm_search,
    fake_business_discovery,
    fake_business_personas,
    fake_dm_discovery,
    fake_market_insights,
    make_services,
)


def _drain(queue: asyncio.Queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


async def _make_due(store: MemoryStore, job_id: str) -> None:
    store._jobs[job_id].run_at = utcnow() - timedelta(seconds=1)


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_crm_search_completes_with_results_for_every_stage(self, services):
        search = await services.store.create_search(crm_search())

        result = await services.orchestrator.start_orchestration(search.id, "user-1", foreground=True)

        assert result.accepted
        assert result.search.status == SearchStatus.COMPLETED
        assert result.search.phase == SearchPhase.COMPLETED
        assert result.search.progress_pct == 100
        snapshot = await services.progress.get_progress(search.id)
        assert snapshot.status == "completed"
        assert all(count > 0 for count in snapshot.counts.values()), snapshot.counts

    @pytest.mark.asyncio
    async def test_progress_events_never_decrease(self, services):
        search = await services.store.create_search(crm_search())
        events = services.progress.broker.open(search.id)

        await services.orchestrator.run(search.id)

        progress = [e.data["progress_pct"] for e in _drain(events) if e.event == EventType.PROGRESS]
        assert progress == sorted(progress)
        assert progress[0] == 5
        assert progress[-1] == 100

    @pytest.mark.asyncio
    async def test_stage_rows_are_announced_as_they_are_written(self, services):
        search = await services.store.create_search(crm_search())
        events = services.progress.broker.open(search.id)

        await services.orchestrator.run(search.id)

        inserted = Counter(e.data["kind"] for e in _drain(events) if e.event == EventType.RECORD_INSERTED)
        assert inserted["business_personas"] == 3
        assert inserted["market_insights"] == 1


class TestFailures:
    @pytest.mark.asyncio
    async def test_business_discovery_failure_fails_search_at_personas(self):
        async def broken_discovery(ctx: StageContext) -> None:
            raise RuntimeError("search provider unavailable")

        services = make_services(business_discovery=broken_discovery)
        search = await services.store.create_search(crm_search())

        final = await services.orchestrator.run(search.id)

        assert final.status == SearchStatus.FAILED
        assert final.progress_pct == 0
        assert final.phase == SearchPhase.PERSONAS
        assert "search provider unavailable" in final.error
        assert await services.store.count_results(ResultKind.BUSINESS_PERSONAS, search.id) == 3

    @pytest.mark.asyncio
    async def test_terminal_error_is_not_retried(self):
        calls = Counter()

        async def missing_input(ctx: StageContext) -> None:
            calls["discovery"] += 1
            raise TerminalStageError("no personas to search with")

        services = make_services(business_discovery=missing_input)
        search = await services.store.create_search(crm_search())

        final = await services.orchestrator.run(search.id)

        assert calls["discovery"] == 1
        assert final.status == SearchStatus.FAILED

    @pytest.mark.asyncio
    async def test_transient_error_is_retried_in_call(self):
        calls = Counter()

        async def flaky_discovery(ctx: StageContext) -> None:
            calls["discovery"] += 1
            if calls["discovery"] < 3:
                raise httpx.ConnectError("connection reset")
            await fake_business_discovery(ctx)

        services = make_services(business_discovery=flaky_discovery)
        search = await services.store.create_search(crm_search())

        final = await services.orchestrator.run(search.id)

        assert calls["discovery"] == 3
        assert final.status == SearchStatus.COMPLETED
        assert await services.store.count_results(ResultKind.BUSINESSES, search.id) == 1

    @pytest.mark.asyncio
    async def test_persona_stages_fail_together(self):
        async def broken_dm_personas(ctx: StageContext) -> None:
            raise TerminalStageError("invalid persona configuration")

        services = make_services(dm_personas=broken_dm_personas)
        search = await services.store.create_search(crm_search())

        final = await services.orchestrator.run(search.id)

        assert final.status == SearchStatus.FAILED
        assert final.phase == SearchPhase.STARTING
        assert final.progress_pct == 0

    @pytest.mark.asyncio
    async def test_failure_is_still_recorded_when_primary_write_raises(self):
        async def broken_discovery(ctx: StageContext) -> None:
            raise TerminalStageError("bad input")

        store = MemoryStore()
        services = make_services(store, business_discovery=broken_discovery)
        search = await store.create_search(crm_search())

        original_update = store.update_search
        state = {"raised": False}

        async def flaky_update(search_id, changes, **kwargs):
            if changes.get("status") == SearchStatus.FAILED and not state["raised"]:
                state["raised"] = True
                raise RuntimeError("connection dropped while writing failure")
            return await original_update(search_id, changes, **kwargs)

        store.update_search = flaky_update

        result = await services.orchestrator.run(search.id)

        assert result is None
        stored = await store.get_search(search.id)
        assert stored.status == SearchStatus.FAILED
        assert stored.progress_pct == 0


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_between_businesses_and_decision_makers_stops_the_run(self):
        holder = {}

        async def dm_discovery_racing_cancel(ctx: StageContext) -> None:
            await holder["services"].cancellation.cancel(ctx.search.id)
            await fake_dm_discovery(ctx)

        services = make_services(dm_discovery=dm_discovery_racing_cancel)
        holder["services"] = services
        search = await services.store.create_search(crm_search())
        events = services.progress.broker.open(search.id)

        final = await services.orchestrator.run(search.id)

        assert final.status == SearchStatus.CANCELLED
        assert final.phase == SearchPhase.CANCELLED
        assert final.progress_pct == 60
        phases = [e.data["phase"] for e in _drain(events) if e.event == EventType.PROGRESS]
        assert "decision_makers" not in phases
        assert await services.store.count_results(ResultKind.MARKET_INSIGHTS, search.id) == 0

    @pytest.mark.asyncio
    async def test_run_of_cancelled_search_does_nothing(self, services):
        search = await services.store.create_search(crm_search())
        await services.cancellation.cancel(search.id)

        final = await services.orchestrator.run(search.id)

        assert final.status == SearchStatus.CANCELLED
        assert await services.store.count_results(ResultKind.BUSINESS_PERSONAS, search.id) == 0


class TestReentrancy:
    @pytest.mark.asyncio
    async def test_resume_does_not_repeat_completed_stages(self):
        calls = Counter()

        async def counted_personas(ctx: StageContext) -> None:
            calls["personas"] += 1
            await fake_business_personas(ctx)

        services = make_services(business_personas=counted_personas)
        search = await services.store.create_search(crm_search(phase=SearchPhase.PERSONAS, progress_pct=25))
        await services.store.insert_results(ResultKind.BUSINESS_PERSONAS, search.id, [{"title": "Existing"}])

        result = await services.orchestrator.start_orchestration(search.id, "user-1", foreground=True)

        assert result.search.status == SearchStatus.COMPLETED
        assert calls["personas"] == 0
        assert await services.store.count_results(ResultKind.BUSINESS_PERSONAS, search.id) == 1

    @pytest.mark.asyncio
    async def test_second_background_trigger_is_absorbed(self, services):
        search = await services.store.create_search(crm_search())

        first = await services.orchestrator.start_orchestration(search.id, "user-1")
        second = await services.orchestrator.start_orchestration(search.id, "user-1")

        assert first.accepted and first.job_id
        assert second.duplicate and not second.accepted
        assert len(await services.store.list_open_jobs(search.id)) == 1

    @pytest.mark.asyncio
    async def test_trigger_within_idempotency_window_is_absorbed(self, services):
        search = await services.store.create_search(crm_search())
        await services.idempotency.reserve(f"orchestrate:{search.id}")

        result = await services.orchestrator.start_orchestration(search.id, "user-1")

        assert result.duplicate
        assert result.job_id is None

    @pytest.mark.asyncio
    async def test_concurrent_runs_in_one_process_execute_once(self):
        calls = Counter()
        release = asyncio.Event()

        async def slow_personas(ctx: StageContext) -> None:
            calls["personas"] += 1
            await release.wait()
            await fake_business_personas(ctx)

        services = make_services(business_personas=slow_personas)
        search = await services.store.create_search(crm_search())

        first = asyncio.create_task(services.orchestrator.run(search.id))
        await asyncio.sleep(0)
        second = await services.orchestrator.run(search.id)
        release.set()
        final = await first

        assert second.status == SearchStatus.IN_PROGRESS
        assert final.status == SearchStatus.COMPLETED
        assert calls["personas"] == 1

    @pytest.mark.asyncio
    async def test_start_rejects_other_users_and_finished_searches(self, services):
        search = await services.store.create_search(crm_search())
        with pytest.raises(SearchOwnershipError):
            await services.orchestrator.start_orchestration(search.id, "someone-else")

        await services.orchestrator.run(search.id)
        with pytest.raises(SearchStateError):
            await services.orchestrator.start_orchestration(search.id, "user-1")


class TestJobAttempts:
    @pytest.mark.asyncio
    async def test_transient_failure_requeues_job_until_final_attempt(self):
        async def unreachable(ctx: StageContext) -> None:
            raise httpx.ConnectTimeout("timed out")

        services = make_services(business_discovery=unreachable)
        store = services.store
        search = await store.create_search(crm_search())
        started = await services.orchestrator.start_orchestration(search.id, "user-1")

        assert await services.worker.dispatch_once() == 1
        job = await store.get_job(started.job_id)
        current = await store.get_search(search.id)
        assert job.status == JobStatus.QUEUED
        assert job.attempt_count == 1
        assert current.status == SearchStatus.IN_PROGRESS
        assert current.phase == SearchPhase.PERSONAS
        assert current.progress_pct == 25

        await _make_due(store, job.id)
        await services.worker.dispatch_once()
        await _make_due(store, job.id)
        await services.worker.dispatch_once()

        job = await store.get_job(started.job_id)
        current = await store.get_search(search.id)
        assert job.status == JobStatus.DONE
        assert current.status == SearchStatus.FAILED
        assert current.phase == SearchPhase.PERSONAS


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_of_failed_search_resumes_from_last_phase(self):
        calls = Counter()
        state = {"fail": True}

        async def counted_personas(ctx: StageContext) -> None:
            calls["personas"] += 1
            await fake_business_personas(ctx)

        async def discovery_until_fixed(ctx: StageContext) -> None:
            if state["fail"]:
                raise TerminalStageError("industry list rejected")
            await fake_business_discovery(ctx)

        services = make_services(business_personas=counted_personas, business_discovery=discovery_until_fixed)
        search = await services.store.create_search(crm_search())
        failed = await services.orchestrator.run(search.id)
        assert failed.status == SearchStatus.FAILED

        state["fail"] = False
        result = await services.orchestrator.retry(search.id, user_id="user-1", foreground=True)

        assert result.accepted
        assert result.search.status == SearchStatus.COMPLETED
        assert result.search.error is None
        assert calls["personas"] == 1

    @pytest.mark.asyncio
    async def test_retry_of_completed_search_reruns_only_market_insights(self):
        calls = Counter()

        async def counted_discovery(ctx: StageContext) -> None:
            calls["discovery"] += 1
            await fake_business_discovery(ctx)

        async def counted_insights(ctx: StageContext) -> None:
            calls["insights"] += 1
            await fake_market_insights(ctx)

        services = make_services(business_discovery=counted_discovery, market_insights=counted_insights)
        search = await services.store.create_search(crm_search())
        await services.orchestrator.run(search.id)

        result = await services.orchestrator.retry(search.id, from_phase="decision_makers", foreground=True)

        assert result.search.status == SearchStatus.COMPLETED
        assert calls == Counter({"discovery": 1, "insights": 2})
        assert await services.store.count_results(ResultKind.MARKET_INSIGHTS, search.id) == 1

    @pytest.mark.asyncio
    async def test_retry_of_cancelled_search_resumes_from_progress(self, services):
        search = await services.store.create_search(crm_search(phase=SearchPhase.BUSINESSES, progress_pct=60))
        await services.cancellation.cancel(search.id)

        result = await services.orchestrator.retry(search.id)

        assert result.accepted and result.job_id
        assert result.search.status == SearchStatus.IN_PROGRESS
        assert result.search.phase == SearchPhase.BUSINESSES
        assert result.search.progress_pct == 60

    @pytest.mark.asyncio
    async def test_retry_while_running_is_rejected(self, services):
        search = await services.store.create_search(crm_search())
        await services.orchestrator.start_orchestration(search.id, "user-1")

        with pytest.raises(SearchStateError):
            await services.orchestrator.retry(search.id)
