"""
quotaledger/features/store/repository.py

Generic versioned entity repository over the key-value store.

Handles:
- Conditional create (version=1, created/updated stamps)
- Versioned updates: every successful update bumps version by exactly 1
- Optimistic concurrency via safe_update(expected_version)
- Soft delete (tombstone) and hard delete
- Query/scan with continuation tokens
- Sequential chunked batch operations (not globally atomic)
- Bounded retry with backoff for reads only; writes are never retried here
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Annotated, Any, Callable, Dict, Generic, Iterable, List, Optional, Sequence, Type, TypeVar

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic_core import to_jsonable_python

from quotaledger.core.config import settings
from quotaledger.core.errors import (
    AlreadyExistsError,
    BatchPartialFailureError,
    StorageUnavailableError,
    ValidationError,
    VersionConflictError,
)
from quotaledger.features.store.base import ConditionalCheckFailedError, KeyValueStore, TableSchema
from quotaledger.features.store.conditions import Attr, Condition
from quotaledger.features.store.factory import get_store
from quotaledger.models.entity import Entity

logger = logging.getLogger("quotaledger.store.repository")

# Managed by the repository; callers cannot set them through update()
_MANAGED_FIELDS = frozenset({"version", "created_at", "updated_at"})


E = TypeVar("E", bound=Entity)


@dataclass
class PageResult(Generic[E]):
    items: List[E] = field(default_factory=list)
    last_evaluated_key: Optional[Dict[str, Any]] = None

    @property
    def has_more(self) -> bool:
        return self.last_evaluated_key is not None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@lru_cache(maxsize=None)
def _field_adapter(model: Type[Entity], name: str) -> TypeAdapter:
    info = model.model_fields[name]
    annotation = info.annotation
    if info.metadata:
        annotation = Annotated[(annotation, *info.metadata)]
    return TypeAdapter(annotation)


def _chunks(items: Sequence[Any], size: int) -> List[Sequence[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class EntityStore(Generic[E]):
    """
    Repository for one entity type in one logical table.

    Args:
        model: Entity subclass stored in the table
        schema: Table schema (key attribute names, indexes)
        key_of: Maps an entity to its primary key dict. Key attributes are
            written alongside the entity fields and stripped on read.
        store: Explicit store; defaults to the process-wide store
    """

    def __init__(
        self,
        model: Type[E],
        schema: TableSchema,
        key_of: Callable[[E], Dict[str, Any]],
        store: Optional[KeyValueStore] = None,
    ):
        self.model = model
        self.schema = schema
        self.key_of = key_of
        self._store = store

    @property
    def store(self) -> KeyValueStore:
        return self._store or get_store()

    # Serialization

    def _to_item(self, entity: E) -> dict:
        item = entity.model_dump(mode="json")
        item.update(self.key_of(entity))
        return item

    def _from_item(self, item: Optional[dict]) -> Optional[E]:
        if item is None:
            return None
        return self.model.model_validate(item)

    def _with_read_retry(self, operation: str, fn: Callable[[], Any]) -> Any:
        attempts = max(settings.STORE_READ_RETRIES, 0) + 1
        for attempt in range(attempts):
            try:
                return fn()
            except StorageUnavailableError:
                if attempt == attempts - 1:
                    logger.error(
                        "store.read_failed",
                        extra={"table": self.schema.name, "error_code": "storage_unavailable", "status": operation},
                    )
                    raise
                delay = settings.STORE_RETRY_BACKOFF_SECONDS * (2 ** attempt)
                logger.warning(
                    "store.read_retry",
                    extra={"table": self.schema.name, "status": operation, "attempt": attempt + 1},
                )
                time.sleep(delay)

    # Single-entity operations

    def create(self, entity: E, *, now: Optional[datetime] = None) -> E:
        """Create an entity; fails AlreadyExistsError if the key is occupied."""
        ts = now or _utcnow()
        stamped = entity.model_copy(update={"version": 1, "created_at": ts, "updated_at": ts})
        item = self._to_item(stamped)
        try:
            self.store.put_item(self.schema, item, condition=Attr(self.schema.partition_key).not_exists())
        except ConditionalCheckFailedError as exc:
            raise AlreadyExistsError(
                f"{self.schema.name} item already exists",
                details={"key": exc.key},
            ) from exc
        return stamped

    def find_by_key(self, key: Dict[str, Any]) -> Optional[E]:
        """Point read. A missing key returns None."""
        item = self._with_read_retry("find_by_key", lambda: self.store.get_item(self.schema, key))
        return self._from_item(item)

    def update(
        self,
        key: Dict[str, Any],
        fields: Dict[str, Any],
        *,
        condition: Optional[Condition] = None,
        now: Optional[datetime] = None,
    ) -> Optional[E]:
        """
        Apply a partial update, bumping version by 1 and updated_at.

        Returns:
            Updated entity, or None if the item does not exist or the
            condition fails.
        """
        try:
            item = self._update_item(key, fields, condition=condition, now=now)
        except ConditionalCheckFailedError:
            logger.info("store.update_condition_failed", extra={"table": self.schema.name})
            return None
        return self._from_item(item)

    def safe_update(
        self,
        key: Dict[str, Any],
        fields: Dict[str, Any],
        expected_version: int,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[E]:
        """
        Update only if the stored version equals expected_version.

        Returns:
            Updated entity, or None if the key does not exist.

        Raises:
            VersionConflictError: Another writer advanced the version first.
        """
        try:
            item = self._update_item(key, fields, condition=Attr("version").eq(expected_version), now=now)
        except ConditionalCheckFailedError:
            current = self._with_read_retry("safe_update", lambda: self.store.get_item(self.schema, key))
            if current is None:
                return None
            logger.warning(
                "store.version_conflict",
                extra={"table": self.schema.name, "error_code": "version_conflict"},
            )
            raise VersionConflictError(
                f"Version conflict on {self.schema.name}: expected {expected_version}, found {current.get('version')}",
                expected_version=expected_version,
                current_version=current.get("version"),
            )
        return self._from_item(item)

    def _update_item(
        self,
        key: Dict[str, Any],
        fields: Dict[str, Any],
        *,
        condition: Optional[Condition],
        now: Optional[datetime],
    ) -> dict:
        managed = _MANAGED_FIELDS.intersection(fields)
        if managed:
            raise ValidationError(f"Fields are managed by the store: {', '.join(sorted(managed))}")
        unknown = set(fields) - set(self.model.model_fields)
        if unknown:
            raise ValidationError(f"Unknown fields for {self.model.__name__}: {', '.join(sorted(unknown))}")

        set_values = to_jsonable_python(self._validate_fields(fields))
        set_values["updated_at"] = to_jsonable_python(now or _utcnow())
        return self.store.update_item(
            self.schema,
            key,
            set_values=set_values,
            add_values={"version": 1},
            condition=condition,
        )

    def _validate_fields(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Validate partial-update values against the model before any write."""
        validated = {}
        for name, value in fields.items():
            try:
                validated[name] = _field_adapter(self.model, name).validate_python(value)
            except PydanticValidationError as exc:
                raise ValidationError(
                    f"Invalid value for {self.model.__name__}.{name}",
                    details={"field": name},
                ) from exc
        return validated

    def increment(
        self,
        key: Dict[str, Any],
        amounts: Dict[str, int],
        *,
        defaults: Optional[Dict[str, Any]] = None,
        condition: Optional[Condition] = None,
        now: Optional[datetime] = None,
    ) -> Optional[E]:
        """
        Atomically add to numeric fields, creating the item if missing.

        Each field follows `SET x = if_not_exists(x, 0) + n`; version is
        bumped the same way. `defaults` are written only when absent.

        Returns:
            Updated entity, or None if the condition fails.
        """
        managed = _MANAGED_FIELDS.intersection(amounts)
        if managed:
            raise ValidationError(f"Fields are managed by the store: {', '.join(sorted(managed))}")

        ts = to_jsonable_python(now or _utcnow())
        missing = to_jsonable_python(dict(defaults or {}))
        missing.setdefault("created_at", ts)
        try:
            item = self.store.update_item(
                self.schema,
                key,
                set_values={"updated_at": ts},
                add_values={**amounts, "version": 1},
                set_if_missing=missing,
                condition=condition,
                upsert=True,
            )
        except ConditionalCheckFailedError:
            return None
        return self._from_item(item)

    def delete(self, key: Dict[str, Any]) -> Optional[E]:
        """Physically remove an item. Returns the removed entity, if any."""
        return self._from_item(self.store.delete_item(self.schema, key))

    def soft_delete(self, key: Dict[str, Any], deleted_by: Optional[str] = None, *, now: Optional[datetime] = None) -> Optional[E]:
        """Tombstone an item; it stays in the table. None if missing."""
        ts = now or _utcnow()
        return self.update(key, {"is_deleted": True, "deleted_at": ts, "deleted_by": deleted_by}, now=ts)

    # Range reads

    def query(
        self,
        key_condition: Condition,
        *,
        index_name: Optional[str] = None,
        filter_condition: Optional[Condition] = None,
        limit: Optional[int] = None,
        scan_forward: bool = True,
        exclusive_start_key: Optional[Dict[str, Any]] = None,
    ) -> List[E]:
        return self.find_with_pagination(
            key_condition,
            index_name=index_name,
            filter_condition=filter_condition,
            limit=limit,
            scan_forward=scan_forward,
            exclusive_start_key=exclusive_start_key,
        ).items

    def scan(
        self,
        *,
        filter_condition: Optional[Condition] = None,
        limit: Optional[int] = None,
        exclusive_start_key: Optional[Dict[str, Any]] = None,
    ) -> List[E]:
        return self.find_with_pagination(
            filter_condition=filter_condition,
            limit=limit,
            exclusive_start_key=exclusive_start_key,
        ).items

    def find_with_pagination(
        self,
        key_condition: Optional[Condition] = None,
        *,
        index_name: Optional[str] = None,
        filter_condition: Optional[Condition] = None,
        limit: Optional[int] = None,
        scan_forward: bool = True,
        exclusive_start_key: Optional[Dict[str, Any]] = None,
    ) -> PageResult[E]:
        """
        One page of a query (key_condition given) or a scan.

        limit defaults to STORE_DEFAULT_PAGE_SIZE and is capped at
        STORE_MAX_PAGE_SIZE. Pass last_evaluated_key back as
        exclusive_start_key to continue.
        """
        page_size = limit if limit is not None else settings.STORE_DEFAULT_PAGE_SIZE
        page_size = min(page_size, settings.STORE_MAX_PAGE_SIZE)

        if key_condition is None:
            if index_name:
                raise ValidationError("index_name requires a key condition")
            read = lambda: self.store.scan(
                self.schema,
                filter_condition=filter_condition,
                limit=page_size,
                exclusive_start_key=exclusive_start_key,
            )
        else:
            read = lambda: self.store.query(
                self.schema,
                key_condition,
                index_name=index_name,
                filter_condition=filter_condition,
                limit=page_size,
                scan_forward=scan_forward,
                exclusive_start_key=exclusive_start_key,
            )

        page = self._with_read_retry("query" if key_condition is not None else "scan", read)
        return PageResult(
            items=[self._from_item(item) for item in page.items],
            last_evaluated_key=page.last_evaluated_key,
        )

    def find_all(
        self,
        key_condition: Optional[Condition] = None,
        *,
        index_name: Optional[str] = None,
        filter_condition: Optional[Condition] = None,
        scan_forward: bool = True,
    ) -> List[E]:
        """Follow continuation tokens until the result set is exhausted."""
        results: List[E] = []
        start_key = None
        while True:
            page = self.find_with_pagination(
                key_condition,
                index_name=index_name,
                filter_condition=filter_condition,
                limit=settings.STORE_MAX_PAGE_SIZE,
                scan_forward=scan_forward,
                exclusive_start_key=start_key,
            )
            results.extend(page.items)
            if not page.has_more:
                return results
            start_key = page.last_evaluated_key

    def find_active(self, key_condition: Optional[Condition] = None, **kwargs) -> List[E]:
        """find_all excluding soft-deleted entities."""
        not_deleted = Attr("is_deleted").not_exists() | Attr("is_deleted").eq(False)
        extra = kwargs.pop("filter_condition", None)
        condition = not_deleted & extra if extra is not None else not_deleted
        return self.find_all(key_condition, filter_condition=condition, **kwargs)

    def exists(self, key: Dict[str, Any]) -> bool:
        return self.find_by_key(key) is not None

    def count(self, key_condition: Optional[Condition] = None, *, filter_condition: Optional[Condition] = None) -> int:
        return len(self.find_all(key_condition, filter_condition=filter_condition))

    # Batch operations

    def _chunk_size(self, requested: int, ceiling: int) -> int:
        if requested < 1:
            raise ValidationError("batch_size must be positive")
        return min(requested, ceiling)

    def batch_create(self, entities: Iterable[E], batch_size: int = 25, *, now: Optional[datetime] = None) -> List[E]:
        """
        Write entities in sequential chunks, one store call per chunk.

        Not globally atomic and not conditional: existing keys are
        overwritten. Keys should be natural ids so a retry is idempotent.

        Raises:
            BatchPartialFailureError: Chunk k failed; chunks before k are
                committed, chunks after k were never attempted.
        """
        ts = now or _utcnow()
        stamped = [e.model_copy(update={"version": 1, "created_at": ts, "updated_at": ts}) for e in entities]
        chunks = _chunks(stamped, self._chunk_size(batch_size, self.store.batch_write_limit))

        committed: List[E] = []
        for index, chunk in enumerate(chunks):
            try:
                self.store.batch_write(self.schema, put_items=[self._to_item(e) for e in chunk])
            except Exception as exc:
                self._log_batch_failure("batch_create", index, len(chunks), len(committed))
                raise BatchPartialFailureError(
                    f"batch_create failed on chunk {index + 1} of {len(chunks)}",
                    operation="batch_create",
                    failed_chunk_index=index,
                    total_chunks=len(chunks),
                    committed=committed,
                    cause=exc,
                ) from exc
            committed.extend(chunk)
        return committed

    def batch_delete(self, keys: Iterable[Dict[str, Any]], batch_size: int = 25) -> int:
        """Delete keys in sequential chunks. Returns the number of keys processed."""
        keys = list(keys)
        chunks = _chunks(keys, self._chunk_size(batch_size, self.store.batch_write_limit))

        done: List[Dict[str, Any]] = []
        for index, chunk in enumerate(chunks):
            try:
                self.store.batch_write(self.schema, delete_keys=list(chunk))
            except Exception as exc:
                self._log_batch_failure("batch_delete", index, len(chunks), len(done))
                raise BatchPartialFailureError(
                    f"batch_delete failed on chunk {index + 1} of {len(chunks)}",
                    operation="batch_delete",
                    failed_chunk_index=index,
                    total_chunks=len(chunks),
                    committed=done,
                    cause=exc,
                ) from exc
            done.extend(chunk)
        return len(done)

    def batch_get(self, keys: Iterable[Dict[str, Any]], batch_size: int = 100) -> List[E]:
        """Fetch keys in sequential chunks; missing keys are omitted."""
        keys = list(keys)
        chunks = _chunks(keys, self._chunk_size(batch_size, self.store.batch_get_limit))

        found: List[E] = []
        for index, chunk in enumerate(chunks):
            try:
                items = self._with_read_retry(
                    "batch_get", lambda chunk=chunk: self.store.batch_get(self.schema, list(chunk))
                )
            except Exception as exc:
                self._log_batch_failure("batch_get", index, len(chunks), len(found))
                raise BatchPartialFailureError(
                    f"batch_get failed on chunk {index + 1} of {len(chunks)}",
                    operation="batch_get",
                    failed_chunk_index=index,
                    total_chunks=len(chunks),
                    committed=found,
                    cause=exc,
                ) from exc
            found.extend(self._from_item(item) for item in items)
        return found

    def _log_batch_failure(self, operation: str, index: int, total: int, committed: int) -> None:
        logger.error(
            "store.batch_partial_failure",
            extra={
                "table": self.schema.name,
                "error_code": "batch_partial_failure",
                "status": operation,
                "failed_chunk_index": index,
                "total_chunks": total,
                "committed_count": committed,
            },
            exc_info=True,
        )
