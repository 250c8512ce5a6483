# quotaledger/conftest.py
import os
import sys
from pathlib import Path

import pytest

# Add project root to PYTHONPATH
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

os.environ.setdefault("ENV", "test")


@pytest.fixture(scope="function", autouse=True)
def memory_store():
    """
    Fresh in-memory store, tier table, hooks and audit trail per test.

    Services resolve the process-wide store lazily, so installing one here
    isolates every test without touching DATABASE_URL.
    """
    from quotaledger.features.audit.service import reset_audit_trail
    from quotaledger.features.quotas.tiers import set_tier_table
    from quotaledger.features.store.factory import reset_store, set_store
    from quotaledger.features.store.memory import InMemoryKeyValueStore
    from quotaledger.features.subscriptions.service import clear_post_commit_hooks

    store = InMemoryKeyValueStore()
    set_store(store)
    set_tier_table(None)
    clear_post_commit_hooks()
    yield store
    clear_post_commit_hooks()
    reset_audit_trail()
    set_tier_table(None)
    reset_store()


@pytest.fixture(scope="function")
def sql_engine(tmp_path):
    """File-backed SQLite engine with kv_items created."""
    from quotaledger.core.database import build_engine, create_all_tables

    engine = build_engine(f"sqlite:///{tmp_path / 'quotaledger.db'}")
    create_all_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def sql_store(sql_engine):
    """SQL store installed as the process-wide store."""
    from quotaledger.features.store.factory import set_store
    from quotaledger.features.store.sql import SqlKeyValueStore

    store = SqlKeyValueStore(sql_engine)
    set_store(store)
    return store


@pytest.fixture(scope="function", params=["memory", "sql"])
def kv_store(request, memory_store):
    """Run a test against both store backends."""
    if request.param == "memory":
        return memory_store
    return request.getfixturevalue("sql_store")


@pytest.fixture(scope="function")
def no_sleep(monkeypatch):
    """Skip read-retry backoff delays."""
    import quotaledger.features.store.repository as repository

    delays = []
    monkeypatch.setattr(repository.time, "sleep", lambda seconds: delays.append(seconds))
    return delays
