from __future__ import annotations

import hashlib
import json
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from app.config import settings
from app.models.search import utcnow
from app.store.base import Store

T = TypeVar("T")


class Reservation(str, Enum):
    GRANTED = "granted"
    ALREADY_RESERVED = "already_reserved"


def _canonical(value: Any) -> Any:
    """Order-insensitive normal form: dict keys sorted, lists sorted by their JSON."""
    if isinstance(value, dict):
        return {str(k): _canonical(v) for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))}
    if isinstance(value, (list, tuple, set)):
        items = [_canonical(v) for v in value]
        return sorted(items, key=lambda v: json.dumps(v, sort_keys=True, default=str))
    return value


def make_key(scope: str, data: Any) -> str:
    """Stable cache key for a logically-identical request."""
    digest = hashlib.sha256(
        json.dumps(_canonical(data), sort_keys=True, default=str).encode("utf-8")
    ).hexdigest()
    return f"{scope}:{digest}"


class IdempotencyCache:
    def __init__(self, store: Store, *, default_ttl_seconds: int | None = None):
        self.store = store
        self.default_ttl_seconds = int(
            default_ttl_seconds if default_ttl_seconds is not None else settings.idempotency_ttl_seconds
        )

    async def reserve(self, key: str, ttl_seconds: int | None = None, payload: Any = None) -> Reservation:
        now = utcnow()
        ttl = self.default_ttl_seconds if ttl_seconds is None else int(ttl_seconds)
        granted = await self.store.reserve_key(key, now + timedelta(seconds=ttl), now, payload)
        return Reservation.GRANTED if granted else Reservation.ALREADY_RESERVED

    async def remember(self, key: str, ttl_seconds: int, calc: Callable[[], Awaitable[T]]) -> T:
        """Return the cached outcome for `key` or compute, store and return it."""
        entry = await self.store.get_cache_entry(key, utcnow())
        if entry is not None:
            return entry.payload
        value = await calc()
        await self.store.put_cache_entry(key, value, utcnow() + timedelta(seconds=ttl_seconds))
        return value

    async def expire_all_before(self, now: datetime | None = None) -> int:
        return await self.store.delete_expired_cache_entries(now or utcnow())
