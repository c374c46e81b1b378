from __future__ import annotations

import json
from typing import Any

from app import llm_client
from app.llm_client import MalformedResponseError
from app.models.search import ResultKind
from app.services.prompt_store import render_prompt
from app.services.stage_runner import StageContext

INSIGHT_FIELDS = ("tam_data", "sam_data", "som_data", "competitor_data", "trends", "opportunities", "sources")


def _summaries(rows: list[dict[str, Any]], keys: tuple[str, ...], limit: int) -> str:
    return json.dumps([{k: row.get(k) for k in keys if row.get(k) is not None} for row in rows[:limit]])


async def generate_market_insights(ctx: StageContext) -> None:
    """One synthesized market assessment per search, grounded on what discovery found."""
    search = ctx.search
    personas = await ctx.recorder.read(ResultKind.BUSINESS_PERSONAS)
    businesses = await ctx.recorder.read(ResultKind.BUSINESSES)

    payload = await llm_client.complete_json(
        render_prompt("market_insights", "system"),
        render_prompt(
            "market_insights",
            "user",
            product_service=search.product_service,
            orientation=search.orientation.value,
            industries=", ".join(search.industries),
            countries=", ".join(search.countries),
            business_personas=_summaries(personas, ("title", "match_score"), 5),
            businesses=_summaries(businesses, ("name", "industry", "country"), 10),
        ),
        max_tokens=3500,
    )
    if not isinstance(payload, dict) or not any(payload.get(field) for field in INSIGHT_FIELDS):
        raise MalformedResponseError("Market insight response has none of the expected sections")

    insight = {field: payload.get(field) for field in INSIGHT_FIELDS}
    insight["sources"] = insight["sources"] or []
    await ctx.recorder.record(ResultKind.MARKET_INSIGHTS, [insight])
