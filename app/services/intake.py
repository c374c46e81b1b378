from __future__ import annotations

from typing import Iterable

from app.models.errors import InvalidSearchError
from app.models.search import Orientation, Search
from app.services import logger as log_service
from app.store.base import Store


def clean_list(values: Iterable[str] | None, field_name: str) -> list[str]:
    """Trim, drop blanks and de-duplicate (case-insensitively) keeping first occurrences."""
    cleaned: list[str] = []
    seen: set[str] = set()
    for value in values or []:
        if not isinstance(value, str):
            raise InvalidSearchError(f"{field_name} must contain only strings")
        item = value.strip()
        if not item or item.lower() in seen:
            continue
        seen.add(item.lower())
        cleaned.append(item)
    if not cleaned:
        raise InvalidSearchError(f"{field_name} must contain at least one non-empty value")
    return cleaned


async def create_search(
    store: Store,
    *,
    user_id: str,
    orientation: str,
    product_service: str,
    industries: Iterable[str],
    countries: Iterable[str],
) -> Search:
    if not (user_id or "").strip():
        raise InvalidSearchError("user_id is required")
    try:
        parsed_orientation = Orientation((orientation or "").strip().lower())
    except ValueError as exc:
        raise InvalidSearchError("orientation must be 'customer' or 'supplier'") from exc
    product = (product_service or "").strip()
    if not product:
        raise InvalidSearchError("product_service must not be empty")

    search = Search(
        user_id=user_id.strip(),
        orientation=parsed_orientation,
        product_service=product,
        industries=clean_list(industries, "industries"),
        countries=clean_list(countries, "countries"),
    )
    stored = await store.create_search(search)
    log_service.log_event(
        "search_created",
        "search created",
        search_id=stored.id,
        orientation=stored.orientation.value,
        industries=stored.industries,
        countries=stored.countries,
    )
    return stored
