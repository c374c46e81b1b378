from __future__ import annotations

from app.config import Settings
from app.store.base import Store
from app.store.memory import MemoryStore


def create_store(config: Settings) -> Store:
    """Build the store handle for the configured backend. Callers own connect/close."""
    backend = config.store_backend.lower().strip()
    if backend == "memory":
        return MemoryStore()
    if backend == "postgres":
        from app.store.postgres import PostgresStore

        return PostgresStore(
            config.database_url,
            min_size=config.database_pool_min_size,
            max_size=config.database_pool_max_size,
        )
    if backend == "supabase":
        from app.store.supabase import SupabaseStore

        return SupabaseStore(config.supabase_url, config.supabase_service_role_key)
    raise ValueError(f"Unsupported STORE_BACKEND: {config.store_backend}")
