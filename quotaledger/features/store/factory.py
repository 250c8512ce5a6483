"""
quotaledger/features/store/factory.py

Store selection.

- SQL store when DATABASE_URL (or TEST_DATABASE_URL) is configured
- In-memory store otherwise; single instance only
- Services and repositories are agnostic to the implementation
"""

import logging
from typing import Optional

from quotaledger.core.config import settings
from quotaledger.core.database import create_all_tables, get_database_url, get_engine
from quotaledger.core.errors import StorageUnavailableError
from quotaledger.features.store.base import KeyValueStore
from quotaledger.features.store.memory import InMemoryKeyValueStore

logger = logging.getLogger("quotaledger.store")

_store_instance: Optional[KeyValueStore] = None


def build_store() -> KeyValueStore:
    """
    Build the configured key-value store.

    Outside production an unreachable database falls back to the in-memory
    store with an error log. In production it raises instead: a per-process
    store would let every instance admit its own quota.
    """
    database_url = get_database_url()
    if not database_url:
        logger.info("store.selected", extra={"status": "memory"})
        return InMemoryKeyValueStore()

    from quotaledger.features.store.sql import SqlKeyValueStore

    try:
        engine = get_engine()
        create_all_tables(engine)
    except Exception as exc:
        if str(settings.ENV).lower() == "production":
            raise StorageUnavailableError(f"Key-value store unavailable: {exc}") from exc
        logger.error("store.fallback_memory", extra={"error_code": "storage_unavailable"}, exc_info=True)
        return InMemoryKeyValueStore()

    logger.info("store.selected", extra={"status": "sql"})
    return SqlKeyValueStore(engine)


def get_store() -> KeyValueStore:
    """Process-wide store instance (lazy)."""
    global _store_instance
    if _store_instance is None:
        _store_instance = build_store()
    return _store_instance


def set_store(store: Optional[KeyValueStore]) -> None:
    """Install a specific store instance (tests, app startup)."""
    global _store_instance
    _store_instance = store


def reset_store() -> None:
    """
    Reset the store instance.

    FOR TESTING ONLY - forces re-initialization on next get_store() call.
    """
    set_store(None)
