from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import httpx

from app.config import settings
from app.models.errors import TerminalStageError

COUNTRY_CODES = {
    "united states": "us", "usa": "us", "us": "us",
    "united kingdom": "gb", "uk": "gb", "gb": "gb",
    "canada": "ca", "germany": "de", "france": "fr", "spain": "es", "italy": "it",
    "australia": "au", "singapore": "sg", "india": "in",
    "saudi arabia": "sa", "ksa": "sa", "sa": "sa",
    "united arab emirates": "ae", "uae": "ae",
    "qatar": "qa", "bahrain": "bh", "kuwait": "kw", "oman": "om",
    "egypt": "eg", "jordan": "jo", "morocco": "ma", "turkey": "tr",
    "south africa": "za", "za": "za",
    "nigeria": "ng", "kenya": "ke", "ghana": "gh", "ethiopia": "et",
}

_semaphore: asyncio.Semaphore | None = None


def _limiter() -> asyncio.Semaphore:
    global _semaphore
    if _semaphore is None:
        _semaphore = asyncio.Semaphore(max(settings.serper_max_parallel_requests, 1))
    return _semaphore


def country_code(country: str) -> str:
    """Serper `gl` code for a country name; unknown names fall back to us."""
    return COUNTRY_CODES.get((country or "").strip().lower(), "us")


@dataclass
class Place:
    name: str
    address: str = ""
    phone: str = ""
    website: str = ""
    rating: float | None = None
    city: str = ""


@dataclass
class WebResult:
    title: str
    url: str
    snippet: str = ""


async def _post(path: str, body: dict[str, Any]) -> dict[str, Any]:
    if not settings.serper_api_key:
        raise TerminalStageError("SERPER_API_KEY is not configured")

    async with _limiter():
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.post(
                f"{settings.serper_base_url.rstrip('/')}/{path}",
                json=body,
                headers={
                    "X-API-KEY": settings.serper_api_key,
                    "Content-Type": "application/json",
                },
            )
            response.raise_for_status()
            return response.json()


async def places(query: str, country: str, *, limit: int = 10) -> list[Place]:
    """Search Google Places through Serper and normalize the listing."""
    payload = await _post("places", {"q": query, "gl": country_code(country), "num": min(max(limit, 10), 15)})
    mapped: list[Place] = []
    for item in (payload.get("places") or [])[:limit]:
        address = item.get("address") or ""
        parts = [p.strip() for p in address.split(",") if p.strip()]
        mapped.append(
            Place(
                name=item.get("title") or "Unknown Business",
                address=address,
                phone=item.get("phoneNumber") or "",
                website=item.get("website") or "",
                rating=item.get("rating"),
                city=parts[-2] if len(parts) > 1 else country,
            )
        )
    return mapped


async def search(query: str, country: str, *, limit: int = 5) -> list[WebResult]:
    """Execute a Serper web search and normalize organic results."""
    payload = await _post("search", {"q": query, "gl": country_code(country), "num": min(limit, 10)})
    return [
        WebResult(
            title=item.get("title", ""),
            url=item.get("link", ""),
            snippet=item.get("snippet", ""),
        )
        for item in (payload.get("organic") or [])[:limit]
    ]
