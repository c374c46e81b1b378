from __future__ import annotations

from dataclasses import dataclass

from app.models.search import ResultKind
from app.services.stage_runner import Stage
from app.stages.discovery import discover_businesses, discover_decision_makers
from app.stages.market import generate_market_insights
from app.stages.personas import generate_business_personas, generate_dm_personas


@dataclass(frozen=True)
class StagePlan:
    """The five stages a search runs through. Tests swap in fakes."""

    business_personas: Stage
    dm_personas: Stage
    business_discovery: Stage
    dm_discovery: Stage
    market_insights: Stage


def default_stage_plan() -> StagePlan:
    return StagePlan(
        business_personas=Stage("business_personas", generate_business_personas, (ResultKind.BUSINESS_PERSONAS,)),
        dm_personas=Stage("dm_personas", generate_dm_personas, (ResultKind.DECISION_MAKER_PERSONAS,)),
        business_discovery=Stage("business_discovery", discover_businesses, (ResultKind.BUSINESSES,)),
        dm_discovery=Stage("dm_discovery", discover_decision_makers, (ResultKind.DECISION_MAKERS,)),
        market_insights=Stage("market_insights", generate_market_insights, (ResultKind.MARKET_INSIGHTS,)),
    )
