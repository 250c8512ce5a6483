"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine construction with sane pooling defaults
- Test database support (TEST_DATABASE_URL wins over DATABASE_URL)
- The physical table backing every logical key-value table
"""
from typing import Optional
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, JSON, Index, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func
import logging
import os

from quotaledger.core.config import settings

logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine
_engine: Optional[Engine] = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
    if test_url:
        return test_url

    return os.getenv("DATABASE_URL") or settings.DATABASE_URL


def build_engine(url: str) -> Engine:
    """Create an engine with pooling suited to the backend."""
    if url.startswith("sqlite"):
        # In-memory SQLite must share one connection or every session sees an empty database
        if url in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(
                url,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        return create_engine(url, connect_args={"check_same_thread": False})

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        echo=False,  # Set to True for SQL query logging
    )


def init_engine(database_url: Optional[str] = None) -> Engine:
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    _engine = build_engine(url)
    return _engine


def get_engine() -> Engine:
    """Get the current SQLAlchemy engine."""
    if _engine is None:
        init_engine()
    return _engine


def dispose_engine() -> None:
    """Drop the global engine (tests switch databases between runs)."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


def create_all_tables(engine: Optional[Engine] = None):
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine or get_engine())


def check_connection(engine: Optional[Engine] = None) -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        eng = engine or get_engine()
        with eng.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("Database connection check failed: %s", e)
        return False


# Every logical table (usage, subscriptions, audit events, ...) lives in
# kv_items, addressed by (table_name, partition_key, sort_key).
# `revision` is the compare-and-swap token for per-item atomic writes and is
# independent of the entity-level `version` attribute.
kv_items = Table(
    'kv_items',
    metadata,
    Column('table_name', String(100), primary_key=True),
    Column('partition_key', String(512), primary_key=True),
    Column('sort_key', String(512), primary_key=True),
    Column('revision', Integer, nullable=False, server_default='1'),
    Column('attributes', JSON, nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_kv_items_table', 'table_name'),
)
