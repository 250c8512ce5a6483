"""
quotaledger/features/store/base.py

Partitioned key-value store contract.

Every logical table is addressed by a partition key and an optional sort key.
Backends guarantee per-item atomic conditional writes; nothing here spans
more than one item except batch_write, which is atomic per call only.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from quotaledger.core.config import settings
from quotaledger.core.errors import ValidationError
from quotaledger.features.store.conditions import Condition, split_key_condition


class ConditionalCheckFailedError(Exception):
    """A conditional write was rejected; nothing was written."""

    def __init__(self, table: str, key: Dict[str, Any], current: Optional[dict] = None):
        super().__init__(f"Conditional check failed on {table} {key}")
        self.table = table
        self.key = key
        self.current = current


@dataclass(frozen=True)
class IndexSchema:
    name: str
    partition_key: str
    sort_key: Optional[str] = None


@dataclass(frozen=True)
class TableSchema:
    name: str
    partition_key: str
    sort_key: Optional[str] = None
    indexes: Tuple[IndexSchema, ...] = ()

    @property
    def key_attributes(self) -> Tuple[str, ...]:
        if self.sort_key:
            return (self.partition_key, self.sort_key)
        return (self.partition_key,)

    def key_of(self, item: Dict[str, Any]) -> Dict[str, Any]:
        """Extract the primary key from an item (or a key dict)."""
        missing = [attr for attr in self.key_attributes if item.get(attr) is None]
        if missing:
            raise ValidationError(f"Missing key attributes for {self.name}: {', '.join(missing)}")
        return {attr: item[attr] for attr in self.key_attributes}

    def storage_key(self, key: Dict[str, Any]) -> Tuple[str, str]:
        key = self.key_of(key)
        sort_value = key.get(self.sort_key, "") if self.sort_key else ""
        return str(key[self.partition_key]), str(sort_value)

    def index(self, name: str) -> IndexSchema:
        for index in self.indexes:
            if index.name == name:
                return index
        raise ValidationError(f"Unknown index '{name}' on table {self.name}")


@dataclass
class Page:
    items: List[dict] = field(default_factory=list)
    last_evaluated_key: Optional[Dict[str, Any]] = None

    @property
    def has_more(self) -> bool:
        return self.last_evaluated_key is not None


def _sort_value(value: Any) -> Tuple[int, Any]:
    # Missing values sort first; numbers before strings
    if value is None:
        return (0, "")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (1, value)
    return (2, str(value))


def apply_update(
    schema: TableSchema,
    key: Dict[str, Any],
    current: Optional[dict],
    *,
    set_values: Optional[Dict[str, Any]] = None,
    add_values: Optional[Dict[str, int]] = None,
    set_if_missing: Optional[Dict[str, Any]] = None,
) -> dict:
    """Compute the post-update item.

    `add_values` follows `SET x = if_not_exists(x, 0) + n`.
    """
    item = dict(current) if current is not None else dict(key)

    for attr, value in (set_if_missing or {}).items():
        if attr not in item:
            item[attr] = value

    for attr, value in (set_values or {}).items():
        if attr in schema.key_attributes and value != key.get(attr):
            raise ValidationError(f"Key attribute '{attr}' cannot be updated")
        item[attr] = value

    for attr, amount in (add_values or {}).items():
        if isinstance(amount, bool) or not isinstance(amount, (int, float)):
            raise ValidationError(f"Increment for '{attr}' must be numeric")
        base = item.get(attr, 0)
        if isinstance(base, bool) or not isinstance(base, (int, float)):
            raise ValidationError(f"Attribute '{attr}' is not numeric")
        item[attr] = base + amount

    return item


class KeyValueStore(ABC):
    """Abstract partitioned key-value store.

    Subclasses implement single-item primitives and the two read feeds
    (_partition_items, _table_items); query/scan ordering, filtering and
    pagination are shared.
    """

    def __init__(self, *, batch_write_limit: Optional[int] = None, batch_get_limit: Optional[int] = None):
        self.batch_write_limit = batch_write_limit or settings.STORE_BATCH_WRITE_LIMIT
        self.batch_get_limit = batch_get_limit or settings.STORE_BATCH_GET_LIMIT

    # Single-item primitives

    @abstractmethod
    def get_item(self, schema: TableSchema, key: Dict[str, Any]) -> Optional[dict]:
        ...

    @abstractmethod
    def put_item(self, schema: TableSchema, item: Dict[str, Any], *, condition: Optional[Condition] = None) -> dict:
        ...

    @abstractmethod
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
        ...

    @abstractmethod
    def delete_item(self, schema: TableSchema, key: Dict[str, Any], *, condition: Optional[Condition] = None) -> Optional[dict]:
        ...

    # Batch primitives

    @abstractmethod
    def _batch_write(self, schema: TableSchema, put_items: Sequence[dict], delete_keys: Sequence[dict]) -> None:
        ...

    @abstractmethod
    def _batch_get(self, schema: TableSchema, keys: Sequence[dict]) -> List[dict]:
        ...

    def batch_write(
        self,
        schema: TableSchema,
        put_items: Optional[Sequence[dict]] = None,
        delete_keys: Optional[Sequence[dict]] = None,
    ) -> None:
        put_items = list(put_items or [])
        delete_keys = list(delete_keys or [])
        size = len(put_items) + len(delete_keys)
        if size > self.batch_write_limit:
            raise ValidationError(f"Batch write of {size} items exceeds limit {self.batch_write_limit}")
        if size:
            self._batch_write(schema, put_items, delete_keys)

    def batch_get(self, schema: TableSchema, keys: Sequence[dict]) -> List[dict]:
        keys = list(keys)
        if len(keys) > self.batch_get_limit:
            raise ValidationError(f"Batch get of {len(keys)} keys exceeds limit {self.batch_get_limit}")
        if not keys:
            return []
        return self._batch_get(schema, keys)

    # Read feeds

    @abstractmethod
    def _partition_items(self, schema: TableSchema, partition_value: Any) -> Iterable[dict]:
        """All items whose primary partition key equals partition_value."""

    @abstractmethod
    def _table_items(self, schema: TableSchema) -> Iterable[dict]:
        """Every item in the logical table."""

    def query(
        self,
        schema: TableSchema,
        key_condition: Condition,
        *,
        index_name: Optional[str] = None,
        filter_condition: Optional[Condition] = None,
        limit: Optional[int] = None,
        scan_forward: bool = True,
        exclusive_start_key: Optional[Dict[str, Any]] = None,
    ) -> Page:
        if index_name:
            index = schema.index(index_name)
            partition_value, sort_condition = split_key_condition(key_condition, index.partition_key)
            candidates = [
                item for item in self._table_items(schema)
                if item.get(index.partition_key) == partition_value
                and (index.sort_key is None or index.sort_key in item)
            ]
            order_attrs = tuple(a for a in (index.sort_key, schema.partition_key, schema.sort_key) if a)
            page_attrs = tuple(dict.fromkeys((index.partition_key,) + order_attrs))
        else:
            partition_value, sort_condition = split_key_condition(key_condition, schema.partition_key)
            candidates = list(self._partition_items(schema, partition_value))
            order_attrs = (schema.sort_key,) if schema.sort_key else (schema.partition_key,)
            page_attrs = schema.key_attributes

        if sort_condition is not None:
            candidates = [item for item in candidates if sort_condition.evaluate(item)]

        return self._paginate(
            candidates,
            order_attrs=order_attrs,
            page_attrs=page_attrs,
            filter_condition=filter_condition,
            limit=limit,
            forward=scan_forward,
            exclusive_start_key=exclusive_start_key,
        )

    def scan(
        self,
        schema: TableSchema,
        *,
        filter_condition: Optional[Condition] = None,
        limit: Optional[int] = None,
        exclusive_start_key: Optional[Dict[str, Any]] = None,
    ) -> Page:
        return self._paginate(
            list(self._table_items(schema)),
            order_attrs=schema.key_attributes,
            page_attrs=schema.key_attributes,
            filter_condition=filter_condition,
            limit=limit,
            forward=True,
            exclusive_start_key=exclusive_start_key,
        )

    @staticmethod
    def _paginate(
        items: List[dict],
        *,
        order_attrs: Tuple[str, ...],
        page_attrs: Tuple[str, ...],
        filter_condition: Optional[Condition],
        limit: Optional[int],
        forward: bool,
        exclusive_start_key: Optional[Dict[str, Any]],
    ) -> Page:
        if limit is not None and limit < 1:
            raise ValidationError("limit must be positive")

        order: Callable[[dict], tuple] = lambda item: tuple(_sort_value(item.get(a)) for a in order_attrs)
        items = sorted(items, key=order, reverse=not forward)

        if exclusive_start_key:
            pivot = order(exclusive_start_key)
            items = [i for i in items if (order(i) > pivot if forward else order(i) < pivot)]

        if filter_condition is not None:
            items = [i for i in items if filter_condition.evaluate(i)]

        if limit is not None and len(items) > limit:
            page = items[:limit]
            last_key = {a: page[-1].get(a) for a in page_attrs}
            return Page(items=page, last_evaluated_key=last_key)
        return Page(items=items)
