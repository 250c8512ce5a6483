"""
quotaledger/features/store/sql.py

Key-value store over SQLAlchemy Core (PostgreSQL in production, SQLite in
tests).

Every logical table lives in kv_items. Single-item writes are a
compare-and-swap on the row's `revision`: read the row, evaluate the
caller's condition against it, then write WHERE revision = <read revision>.
Losing the race re-reads and re-evaluates, so a conditional write is never
applied against stale state.
"""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, delete, insert, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.sql import func

from quotaledger.core.database import get_engine, kv_items
from quotaledger.core.errors import StorageUnavailableError
from quotaledger.features.store.base import (
    ConditionalCheckFailedError,
    KeyValueStore,
    TableSchema,
    apply_update,
)
from quotaledger.features.store.conditions import Condition

logger = logging.getLogger("quotaledger.store.sql")

MAX_WRITE_ATTEMPTS = 25

_DELETE = object()


class SqlKeyValueStore(KeyValueStore):
    def __init__(self, engine: Optional[Engine] = None, *, max_write_attempts: int = MAX_WRITE_ATTEMPTS, **kwargs):
        super().__init__(**kwargs)
        self._engine = engine or get_engine()
        self._session_factory = sessionmaker(bind=self._engine, autoflush=False)
        self.max_write_attempts = max_write_attempts

    @contextmanager
    def _session(self):
        session: Session = self._session_factory()
        try:
            yield session
            session.commit()
        except (OperationalError, InterfaceError) as exc:
            session.rollback()
            logger.error("store.unavailable", extra={"error_code": "storage_unavailable"}, exc_info=True)
            raise StorageUnavailableError(f"Key-value store unavailable: {exc.__class__.__name__}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _where_key(schema: TableSchema, storage_key: Tuple[str, str]):
        partition_key, sort_key = storage_key
        return and_(
            kv_items.c.table_name == schema.name,
            kv_items.c.partition_key == partition_key,
            kv_items.c.sort_key == sort_key,
        )

    def _read_row(self, session: Session, schema: TableSchema, storage_key: Tuple[str, str]):
        return session.execute(
            select(kv_items.c.revision, kv_items.c.attributes).where(self._where_key(schema, storage_key))
        ).first()

    def _compare_and_swap(
        self,
        schema: TableSchema,
        key: Dict[str, Any],
        mutate: Callable[[Optional[dict]], Any],
    ) -> Tuple[Optional[dict], Any]:
        """Apply mutate(current) atomically.

        mutate returns the new item, or _DELETE; it raises
        ConditionalCheckFailedError to reject the write.

        Returns:
            (previous item, new item or _DELETE)
        """
        storage_key = schema.storage_key(key)
        for _ in range(self.max_write_attempts):
            try:
                with self._session() as session:
                    row = self._read_row(session, schema, storage_key)
                    current = dict(row.attributes) if row else None
                    new_item = mutate(current)

                    if row is None:
                        if new_item is _DELETE:
                            return None, _DELETE
                        session.execute(
                            insert(kv_items).values(
                                table_name=schema.name,
                                partition_key=storage_key[0],
                                sort_key=storage_key[1],
                                revision=1,
                                attributes=new_item,
                            )
                        )
                        return None, new_item

                    guard = and_(self._where_key(schema, storage_key), kv_items.c.revision == row.revision)
                    if new_item is _DELETE:
                        result = session.execute(delete(kv_items).where(guard))
                    else:
                        result = session.execute(
                            update(kv_items)
                            .where(guard)
                            .values(revision=row.revision + 1, attributes=new_item, updated_at=func.now())
                        )
                    if result.rowcount == 1:
                        return current, new_item
            except IntegrityError:
                # Concurrent insert of the same key; re-read and re-evaluate
                pass
            logger.debug("store.cas_retry", extra={"table": schema.name})

        raise StorageUnavailableError(f"Write contention on {schema.name} {key}: gave up after {self.max_write_attempts} attempts")

    def get_item(self, schema: TableSchema, key: Dict[str, Any]) -> Optional[dict]:
        storage_key = schema.storage_key(key)
        with self._session() as session:
            row = self._read_row(session, schema, storage_key)
            return dict(row.attributes) if row else None

    def put_item(self, schema: TableSchema, item: Dict[str, Any], *, condition: Optional[Condition] = None) -> dict:
        key = schema.key_of(item)

        def mutate(current: Optional[dict]):
            if condition is not None and not condition.evaluate(current):
                raise ConditionalCheckFailedError(schema.name, key, current)
            return dict(item)

        _, new_item = self._compare_and_swap(schema, key, mutate)
        return new_item

    def update_item(
        self,
        schema: TableSchema,
        key: Dict[str, Any],
        *,
        set_values: Optional[Dict[str, Any]] = None,
        add_values: Optional[Dict[str, int]] = None,
        set_if_missing: Optional[Dict[str, Any]] = None,
        condition: Optional[Condition] = None,
        upsert: bool = False,
    ) -> dict:
        key = schema.key_of(key)

        def mutate(current: Optional[dict]):
            if current is None and not upsert:
                raise ConditionalCheckFailedError(schema.name, key)
            if condition is not None and not condition.evaluate(current):
                raise ConditionalCheckFailedError(schema.name, key, current)
            return apply_update(
                schema,
                key,
                current,
                set_values=set_values,
                add_values=add_values,
                set_if_missing=set_if_missing,
            )

        _, new_item = self._compare_and_swap(schema, key, mutate)
        return new_item

    def delete_item(self, schema: TableSchema, key: Dict[str, Any], *, condition: Optional[Condition] = None) -> Optional[dict]:
        key = schema.key_of(key)

        def mutate(current: Optional[dict]):
            if condition is not None and not condition.evaluate(current):
                raise ConditionalCheckFailedError(schema.name, key, current)
            return _DELETE

        previous, _ = self._compare_and_swap(schema, key, mutate)
        return previous

    def _batch_write(self, schema: TableSchema, put_items: Sequence[dict], delete_keys: Sequence[dict]) -> None:
        puts = [(schema.storage_key(item), dict(item)) for item in put_items]
        deletes = [schema.storage_key(key) for key in delete_keys]

        for _ in range(self.max_write_attempts):
            try:
                # One transaction per call: the chunk commits or rolls back whole
                with self._session() as session:
                    for storage_key, item in puts:
                        result = session.execute(
                            update(kv_items)
                            .where(self._where_key(schema, storage_key))
                            .values(revision=kv_items.c.revision + 1, attributes=item, updated_at=func.now())
                        )
                        if result.rowcount == 0:
                            session.execute(
                                insert(kv_items).values(
                                    table_name=schema.name,
                                    partition_key=storage_key[0],
                                    sort_key=storage_key[1],
                                    revision=1,
                                    attributes=item,
                                )
                            )
                    for storage_key in deletes:
                        session.execute(delete(kv_items).where(self._where_key(schema, storage_key)))
                return
            except IntegrityError:
                # Unconditional puts are idempotent; replay the whole chunk
                logger.debug("store.batch_retry", extra={"table": schema.name})

        raise StorageUnavailableError(f"Write contention on {schema.name}: batch gave up after {self.max_write_attempts} attempts")

    def _batch_get(self, schema: TableSchema, keys: Sequence[dict]) -> List[dict]:
        storage_keys = [schema.storage_key(key) for key in keys]
        clauses = [
            and_(kv_items.c.partition_key == pk, kv_items.c.sort_key == sk)
            for pk, sk in storage_keys
        ]
        with self._session() as session:
            rows = session.execute(
                select(kv_items.c.partition_key, kv_items.c.sort_key, kv_items.c.attributes)
                .where(kv_items.c.table_name == schema.name)
                .where(or_(*clauses))
            ).all()
        found = {(row.partition_key, row.sort_key): dict(row.attributes) for row in rows}
        return [found[k] for k in storage_keys if k in found]

    def _partition_items(self, schema: TableSchema, partition_value: Any) -> Iterable[dict]:
        with self._session() as session:
            rows = session.execute(
                select(kv_items.c.attributes)
                .where(kv_items.c.table_name == schema.name)
                .where(kv_items.c.partition_key == str(partition_value))
            ).all()
        return [dict(row.attributes) for row in rows]

    def _table_items(self, schema: TableSchema) -> Iterable[dict]:
        with self._session() as session:
            rows = session.execute(
                select(kv_items.c.attributes).where(kv_items.c.table_name == schema.name)
            ).all()
        return [dict(row.attributes) for row in rows]
