"""
Store selection: memory without a database, SQL with one, and the
production rule for an unreachable database.
"""
import pytest

from quotaledger.core import database
from quotaledger.core.config import settings
from quotaledger.core.errors import StorageUnavailableError
from quotaledger.features.store.factory import build_store, get_store, reset_store, set_store
from quotaledger.features.store.memory import InMemoryKeyValueStore
from quotaledger.features.store.sql import SqlKeyValueStore


@pytest.fixture
def fresh_engine():
    database.dispose_engine()
    yield
    database.dispose_engine()


def test_memory_store_without_database(monkeypatch, fresh_engine):
    monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setattr(settings, "TEST_DATABASE_URL", None)
    monkeypatch.setattr(settings, "DATABASE_URL", None)
    assert isinstance(build_store(), InMemoryKeyValueStore)


def test_sql_store_with_database(monkeypatch, tmp_path, fresh_engine):
    monkeypatch.setenv("TEST_DATABASE_URL", f"sqlite:///{tmp_path / 'ledger.db'}")
    store = build_store()
    assert isinstance(store, SqlKeyValueStore)
    assert database.check_connection()


def test_unreachable_database_falls_back_outside_production(monkeypatch, tmp_path, fresh_engine):
    monkeypatch.setenv("TEST_DATABASE_URL", f"sqlite:///{tmp_path / 'no' / 'such' / 'ledger.db'}")
    monkeypatch.setattr(settings, "ENV", "development")
    assert isinstance(build_store(), InMemoryKeyValueStore)


def test_unreachable_database_raises_in_production(monkeypatch, tmp_path, fresh_engine):
    monkeypatch.setenv("TEST_DATABASE_URL", f"sqlite:///{tmp_path / 'no' / 'such' / 'ledger.db'}")
    monkeypatch.setattr(settings, "ENV", "production")
    with pytest.raises(StorageUnavailableError):
        build_store()


def test_get_store_is_lazy_and_cached(memory_store):
    assert get_store() is memory_store
    reset_store()
    other = InMemoryKeyValueStore()
    set_store(other)
    assert get_store() is other
