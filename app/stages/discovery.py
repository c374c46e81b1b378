"""Discovery stages: businesses per industry and country, then people inside them."""
from __future__ import annotations

import asyncio
from dataclasses import asdict
from typing import Any, Awaitable, Callable

from loguru import logger

from app.config import settings
from app.models.errors import TerminalStageError
from app.models.search import ResultKind
from app.services.idempotency import make_key
from app.services.stage_runner import StageContext
from app.tools import serper_search


async def _cached_lookup(
    ctx: StageContext, scope: str, request: dict[str, Any], fetch: Callable[[], Awaitable[list[Any]]]
) -> list[dict[str, Any]]:
    """Provider rows for `request`, served from the cache when the same query ran recently."""

    async def calc() -> list[dict[str, Any]]:
        return [asdict(item) for item in await fetch()]

    if ctx.cache is None:
        return await calc()
    return await ctx.cache.remember(make_key(scope, request), settings.serper_cache_ttl_seconds, calc)


def _persona_for(industry: str, personas: list[dict[str, Any]], position: int) -> dict[str, Any]:
    """Prefer a persona whose demographics name the industry; else rotate through them."""
    wanted = industry.lower()
    for persona in personas:
        persona_industry = str((persona.get("demographics") or {}).get("industry") or "").lower()
        if persona_industry and (wanted in persona_industry or persona_industry in wanted):
            return persona
    return personas[position % len(personas)]


async def discover_businesses(ctx: StageContext) -> None:
    search = ctx.search
    personas = await ctx.recorder.read(ResultKind.BUSINESS_PERSONAS)
    if not personas:
        raise TerminalStageError("Business discovery needs business personas; none were generated")

    seen: set[tuple[str, str]] = set()
    lock = asyncio.Lock()

    async def run_query(industry: str, country: str) -> int:
        query = f"{industry} companies that need {search.product_service}"
        limit = settings.businesses_per_query
        rows_found = await _cached_lookup(
            ctx,
            "serper.places",
            {"q": query, "country": country, "limit": limit},
            lambda: serper_search.places(query, country, limit=limit),
        )
        found = [serper_search.Place(**row) for row in rows_found]
        rows: list[dict[str, Any]] = []
        async with lock:
            for position, place in enumerate(found):
                key = (place.name.lower(), place.address.lower())
                if key in seen:
                    continue
                seen.add(key)
                persona = _persona_for(industry, personas, position)
                rows.append(
                    {
                        **asdict(place),
                        "industry": industry,
                        "country": country,
                        "persona_id": persona.get("id"),
                        "persona_title": persona.get("title"),
                        "match_score": persona.get("match_score", 0),
                        "discovery_query": query,
                    }
                )
        await ctx.recorder.record(ResultKind.BUSINESSES, rows)
        return len(rows)

    counts = await asyncio.gather(
        *(run_query(industry, country) for industry in search.industries for country in search.countries)
    )
    logger.info(f"Business discovery for search {search.id} stored {sum(counts)} businesses")


def _split_profile_title(title: str) -> tuple[str, str]:
    # LinkedIn result titles read "Name - Role - Company | LinkedIn".
    parts = [p.strip() for p in title.replace("| LinkedIn", "").split(" - ") if p.strip()]
    if not parts:
        return "", ""
    return parts[0], parts[1] if len(parts) > 1 else ""


def _match_dm_persona(role: str, personas: list[dict[str, Any]]) -> dict[str, Any] | None:
    lowered = role.lower()
    for persona in personas:
        title = str(persona.get("title") or "").lower()
        if title and any(word in lowered for word in title.split() if len(word) > 3):
            return persona
    return personas[0] if personas else None


async def discover_decision_makers(ctx: StageContext) -> None:
    search = ctx.search
    businesses = await ctx.recorder.read(ResultKind.BUSINESSES)
    if not businesses:
        raise TerminalStageError("Decision-maker discovery needs businesses; none were discovered")
    personas = await ctx.recorder.read(ResultKind.DECISION_MAKER_PERSONAS)
    roles = " OR ".join(f'"{p["title"]}"' for p in personas[:3] if p.get("title"))

    async def run_business(business: dict[str, Any]) -> int:
        query = f'site:linkedin.com/in "{business["name"]}"'
        if roles:
            query = f"{query} ({roles})"
        country = business.get("country") or ""
        hits = await _cached_lookup(
            ctx,
            "serper.search",
            {"q": query, "country": country, "limit": 5},
            lambda: serper_search.search(query, country, limit=5),
        )
        results = [serper_search.WebResult(**hit) for hit in hits]
        rows: list[dict[str, Any]] = []
        for result in results:
            if "linkedin.com/in" not in result.url:
                continue
            name, role = _split_profile_title(result.title)
            if not name:
                continue
            persona = _match_dm_persona(role, personas)
            rows.append(
                {
                    "name": name,
                    "title": role,
                    "linkedin": result.url,
                    "snippet": result.snippet,
                    "business_id": business.get("id"),
                    "company": business["name"],
                    "persona_id": persona.get("id") if persona else None,
                    "persona_title": persona.get("title") if persona else None,
                }
            )
        await ctx.recorder.record(ResultKind.DECISION_MAKERS, rows)
        return len(rows)

    counts = await asyncio.gather(
        *(run_business(b) for b in businesses[: settings.max_businesses_for_dm_discovery])
    )
    logger.info(f"Decision-maker discovery for search {search.id} stored {sum(counts)} profiles")
