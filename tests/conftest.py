"""Shared fixtures: an in-memory store, fast stage runner and fake stages."""
from __future__ import annotations

from typing import Any

import pytest

from app.models.errors import TerminalStageError
from app.models.search import Orientation, ResultKind, Search
from app.services.container import Services, build_services
from app.services.stage_runner import Stage, StageContext, StageRunner
from app.stages.registry import StagePlan
from app.store.memory import MemoryStore


async def fake_business_personas(ctx: StageContext) -> None:
    await ctx.recorder.record(
        ResultKind.BUSINESS_PERSONAS,
        [{"title": f"Segment {i}", "rank": i, "match_score": 90 - i} for i in range(1, 4)],
    )


async def fake_dm_personas(ctx: StageContext) -> None:
    await ctx.recorder.record(
        ResultKind.DECISION_MAKER_PERSONAS,
        [{"title": "VP Sales", "rank": 1, "match_score": 88}, {"title": "CTO", "rank": 2, "match_score": 80}],
    )


async def fake_business_discovery(ctx: StageContext) -> None:
    personas = await ctx.recorder.read(ResultKind.BUSINESS_PERSONAS)
    if not personas:
        raise TerminalStageError("no personas")
    await ctx.recorder.record(
        ResultKind.BUSINESSES,
        [
            {"name": f"{industry} Co {country}", "industry": industry, "country": country}
            for industry in ctx.search.industries
            for country in ctx.search.countries
        ],
    )


async def fake_dm_discovery(ctx: StageContext) -> None:
    businesses = await ctx.recorder.read(ResultKind.BUSINESSES)
    if not businesses:
        raise TerminalStageError("no businesses")
    await ctx.recorder.record(
        ResultKind.DECISION_MAKERS,
        [{"name": f"Person at {b['name']}", "company": b["name"]} for b in businesses],
    )


async def fake_market_insights(ctx: StageContext) -> None:
    await ctx.recorder.record(ResultKind.MARKET_INSIGHTS, [{"tam_data": {"value": "$10B"}, "sources": []}])


def fake_plan(**overrides: Any) -> StagePlan:
    """Fake stages keyed like StagePlan; pass a coroutine function to replace one."""
    stages = {
        "business_personas": Stage("business_personas", fake_business_personas, (ResultKind.BUSINESS_PERSONAS,)),
        "dm_personas": Stage("dm_personas", fake_dm_personas, (ResultKind.DECISION_MAKER_PERSONAS,)),
        "business_discovery": Stage("business_discovery", fake_business_discovery, (ResultKind.BUSINESSES,)),
        "dm_discovery": Stage("dm_discovery", fake_dm_discovery, (ResultKind.DECISION_MAKERS,)),
        "market_insights": Stage("market_insights", fake_market_insights, (ResultKind.MARKET_INSIGHTS,)),
    }
    for name, fn in overrides.items():
        stages[name] = Stage(name, fn, stages[name].kinds)
    return StagePlan(**stages)


def fast_runner() -> StageRunner:
    return StageRunner(attempts=3, min_wait_seconds=0, max_wait_seconds=0)


def make_services(store: MemoryStore | None = None, **overrides: Any) -> Services:
    return build_services(store or MemoryStore(), stages=fake_plan(**overrides), runner=fast_runner())


def crm_search(**kwargs: Any) -> Search:
    values = {
        "user_id": "user-1",
        "orientation": Orientation.CUSTOMER,
        "product_service": "CRM software",
        "industries": ["Technology"],
        "countries": ["United States"],
    }
    values.update(kwargs)
    return Search(**values)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def services(store: MemoryStore) -> Services:
    return make_services(store)
