"""
quotaledger/features/store/memory.py

Single-instance in-memory key-value store.

Used when no DATABASE_URL is configured and in tests. State lives in this
process only: it does not survive restarts and is not shared between
instances.
"""

import copy
import threading
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from quotaledger.features.store.base import (
    ConditionalCheckFailedError,
    KeyValueStore,
    TableSchema,
    apply_update,
)
from quotaledger.features.store.conditions import Condition


class InMemoryKeyValueStore(KeyValueStore):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._tables: Dict[str, Dict[Tuple[str, str], dict]] = {}
        # One lock gives every single-item write (and each batch call) atomicity
        self._lock = threading.RLock()

    def _table(self, schema: TableSchema) -> Dict[Tuple[str, str], dict]:
        return self._tables.setdefault(schema.name, {})

    def get_item(self, schema: TableSchema, key: Dict[str, Any]) -> Optional[dict]:
        storage_key = schema.storage_key(key)
        with self._lock:
            item = self._table(schema).get(storage_key)
            return copy.deepcopy(item) if item is not None else None

    def put_item(self, schema: TableSchema, item: Dict[str, Any], *, condition: Optional[Condition] = None) -> dict:
        key = schema.key_of(item)
        storage_key = schema.storage_key(key)
        with self._lock:
            table = self._table(schema)
            current = table.get(storage_key)
            if condition is not None and not condition.evaluate(current):
                raise ConditionalCheckFailedError(schema.name, key, copy.deepcopy(current))
            table[storage_key] = copy.deepcopy(item)
            return copy.deepcopy(item)

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
        storage_key = schema.storage_key(key)
        with self._lock:
            table = self._table(schema)
            current = table.get(storage_key)
            if current is None and not upsert:
                raise ConditionalCheckFailedError(schema.name, key)
            if condition is not None and not condition.evaluate(current):
                raise ConditionalCheckFailedError(schema.name, key, copy.deepcopy(current))
            updated = apply_update(
                schema,
                key,
                current,
                set_values=set_values,
                add_values=add_values,
                set_if_missing=set_if_missing,
            )
            table[storage_key] = copy.deepcopy(updated)
            return updated

    def delete_item(self, schema: TableSchema, key: Dict[str, Any], *, condition: Optional[Condition] = None) -> Optional[dict]:
        key = schema.key_of(key)
        storage_key = schema.storage_key(key)
        with self._lock:
            table = self._table(schema)
            current = table.get(storage_key)
            if condition is not None and not condition.evaluate(current):
                raise ConditionalCheckFailedError(schema.name, key, copy.deepcopy(current))
            return table.pop(storage_key, None)

    def _batch_write(self, schema: TableSchema, put_items: Sequence[dict], delete_keys: Sequence[dict]) -> None:
        # Validate every key before touching state so the call is all-or-nothing
        puts = [(schema.storage_key(item), copy.deepcopy(item)) for item in put_items]
        deletes = [schema.storage_key(key) for key in delete_keys]
        with self._lock:
            table = self._table(schema)
            for storage_key, item in puts:
                table[storage_key] = item
            for storage_key in deletes:
                table.pop(storage_key, None)

    def _batch_get(self, schema: TableSchema, keys: Sequence[dict]) -> List[dict]:
        storage_keys = [schema.storage_key(key) for key in keys]
        with self._lock:
            table = self._table(schema)
            return [copy.deepcopy(table[k]) for k in storage_keys if k in table]

    def _partition_items(self, schema: TableSchema, partition_value: Any) -> Iterable[dict]:
        with self._lock:
            return [
                copy.deepcopy(item)
                for (pk, _), item in self._table(schema).items()
                if pk == str(partition_value)
            ]

    def _table_items(self, schema: TableSchema) -> Iterable[dict]:
        with self._lock:
            return [copy.deepcopy(item) for item in self._table(schema).values()]
