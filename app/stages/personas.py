"""Persona synthesis stages: business segments and the decision makers inside them."""
from __future__ import annotations

from typing import Any

from app import llm_client
from app.config import settings
from app.llm_client import MalformedResponseError
from app.models.search import Orientation, ResultKind, Search
from app.services.prompt_store import render_prompt
from app.services.stage_runner import StageContext


def _relationship(search: Search) -> str:
    if search.orientation is Orientation.SUPPLIER:
        return "supply the inputs needed to deliver"
    return "buy"


def _prompt_values(search: Search, count: int) -> dict[str, Any]:
    return {
        "count": count,
        "relationship": _relationship(search),
        "product_service": search.product_service,
        "industries": ", ".join(search.industries),
        "countries": ", ".join(search.countries),
    }


def normalize_personas(payload: Any, count: int) -> list[dict[str, Any]]:
    """Keep well-formed personas with distinct titles, ranked 1..n."""
    raw = payload.get("personas") if isinstance(payload, dict) else payload
    if not isinstance(raw, list):
        return []

    personas: list[dict[str, Any]] = []
    seen: set[str] = set()
    for item in raw:
        if not isinstance(item, dict):
            continue
        title = str(item.get("title") or "").strip()
        if not title or title.lower() in seen:
            continue
        seen.add(title.lower())
        try:
            score = int(item.get("match_score") or 0)
        except (TypeError, ValueError):
            score = 0
        personas.append(
            {
                "title": title,
                "rank": len(personas) + 1,
                "match_score": max(0, min(score, 100)),
                "demographics": item.get("demographics") or {},
                "characteristics": item.get("characteristics") or {},
                "behaviors": item.get("behaviors") or {},
                "market_potential": item.get("market_potential") or {},
                "locations": item.get("locations") or [],
            }
        )
        if len(personas) >= count:
            break
    return personas


async def _generate(ctx: StageContext, prompt_key: str, kind: ResultKind, count: int) -> None:
    values = _prompt_values(ctx.search, count)
    payload = await llm_client.complete_json(
        render_prompt(prompt_key, "system"),
        render_prompt(prompt_key, "user", **values),
    )
    personas = normalize_personas(payload, count)
    if not personas:
        raise MalformedResponseError(f"{prompt_key} response contained no usable personas")
    await ctx.recorder.record(kind, personas)


async def generate_business_personas(ctx: StageContext) -> None:
    await _generate(ctx, "business_personas", ResultKind.BUSINESS_PERSONAS, settings.business_personas_count)


async def generate_dm_personas(ctx: StageContext) -> None:
    await _generate(ctx, "dm_personas", ResultKind.DECISION_MAKER_PERSONAS, settings.dm_personas_count)
