"""
quotaledger/features/usage/service.py

Usage ledger: per-(organization, period) counters.

Handles:
- Idempotent lazy initialization of the period record
- Atomic increments (`if_not_exists(counter, 0) + n`), optionally with a ceiling
- Point-in-time snapshots (missing record = zero usage)
- Per-period history for reporting
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from quotaledger.core.errors import AlreadyExistsError, QuotaExceededError, ValidationError
from quotaledger.features.periods.service import as_utc, current_period_key, next_period_start, parse_period_key
from quotaledger.features.store.base import TableSchema
from quotaledger.features.store.conditions import Attr, Key
from quotaledger.features.store.repository import EntityStore
from quotaledger.models.usage import (
    RESOURCE_LABELS,
    USAGE_COUNTER_FIELDS,
    ResourceType,
    UsageRecord,
    UsageStats,
)

logger = logging.getLogger(__name__)

USAGE_TABLE = TableSchema(name="usage", partition_key="pk", sort_key="sk")

USAGE_SORT_PREFIX = "USAGE#"


def usage_key(organization_id: str, period: str) -> Dict[str, str]:
    return {"pk": f"ORG#{organization_id}", "sk": f"{USAGE_SORT_PREFIX}{period}"}


usage_records: EntityStore[UsageRecord] = EntityStore(
    UsageRecord,
    USAGE_TABLE,
    lambda record: usage_key(record.organization_id, record.period),
)


def _require_org(organization_id: str) -> str:
    if not organization_id or not str(organization_id).strip():
        raise ValidationError("organization_id is required")
    return str(organization_id)


def _resource(resource_type) -> ResourceType:
    try:
        return ResourceType(resource_type)
    except ValueError:
        raise ValidationError(f"Unknown resource type '{resource_type}'")


def initialize_usage_tracking(organization_id: str, now: Optional[datetime] = None) -> UsageRecord:
    """
    Create the zeroed record for the current period if it does not exist.

    Idempotent: a second call leaves the counters untouched.
    """
    organization_id = _require_org(organization_id)
    ts = as_utc(now)
    period = current_period_key(ts)
    try:
        record = usage_records.create(UsageRecord(organization_id=organization_id, period=period), now=ts)
        logger.info("usage.initialized", extra={"organization_id": organization_id, "period": period})
        return record
    except AlreadyExistsError:
        logger.debug("usage.already_initialized", extra={"organization_id": organization_id, "period": period})
        return usage_records.find_by_key(usage_key(organization_id, period))


def record_action(
    organization_id: str,
    resource_type,
    *,
    amount: int = 1,
    ceiling: Optional[int] = None,
    now: Optional[datetime] = None,
) -> UsageRecord:
    """
    Atomically add `amount` to the counter for `resource_type`.

    Concurrent calls linearize on the counter: N increments always sum to N.
    With `ceiling`, the increment applies only if the result stays within
    it (hard limit).

    Raises:
        ValidationError: Unknown resource type or non-positive amount.
        QuotaExceededError: The increment would cross `ceiling`.
    """
    organization_id = _require_org(organization_id)
    resource = _resource(resource_type)
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
        raise ValidationError("amount must be a positive integer")

    ts = as_utc(now)
    period = current_period_key(ts)
    counter = USAGE_COUNTER_FIELDS[resource]

    condition = None
    if ceiling is not None:
        if amount > ceiling:
            current = get_usage_snapshot(organization_id, now=ts)
            _raise_exceeded(organization_id, resource, ceiling, used=current.used(resource), now=ts)
        condition = Attr(counter).not_exists() | Attr(counter).lte(ceiling - amount)

    defaults = {field: 0 for field in USAGE_COUNTER_FIELDS.values() if field != counter}
    defaults.update({"organization_id": organization_id, "period": period, "is_deleted": False})

    record = usage_records.increment(
        usage_key(organization_id, period),
        {counter: amount},
        defaults=defaults,
        condition=condition,
        now=ts,
    )
    if record is None:
        current = get_usage_snapshot(organization_id, now=ts)
        _raise_exceeded(organization_id, resource, ceiling, used=current.used(resource), now=ts)

    logger.info(
        "usage.recorded",
        extra={
            "organization_id": organization_id,
            "resource_type": resource.value,
            "period": period,
            "amount": amount,
            "counter_value": getattr(record, counter),
        },
    )
    return record


def _raise_exceeded(organization_id: str, resource: ResourceType, ceiling: int, *, used: int, now: datetime):
    label = RESOURCE_LABELS[resource]
    remaining = max(ceiling - used, 0)
    logger.warning(
        "usage.ceiling_reached",
        extra={
            "organization_id": organization_id,
            "resource_type": resource.value,
            "error_code": "quota_exceeded",
            "limit": ceiling,
            "used": used,
        },
    )
    raise QuotaExceededError(
        f"Monthly limit of {ceiling} {label} exceeded. Upgrade subscription for more {label}.",
        remaining=remaining,
        limit=ceiling,
        reset_date=next_period_start(now).isoformat(),
        resource_type=resource.value,
    )


def get_usage_snapshot(
    organization_id: str,
    now: Optional[datetime] = None,
    *,
    period: Optional[str] = None,
) -> UsageStats:
    """Usage for the current period (or `period`). A missing record reads as zeros."""
    organization_id = _require_org(organization_id)
    if period is not None:
        parse_period_key(period)
    else:
        period = current_period_key(now)

    record = usage_records.find_by_key(usage_key(organization_id, period))
    if record is None:
        return UsageStats(organization_id=organization_id, period=period)
    return UsageStats(
        organization_id=organization_id,
        period=period,
        **{field: getattr(record, field) for field in USAGE_COUNTER_FIELDS.values()},
    )


def get_usage_history(organization_id: str, *, limit: int = 12) -> List[UsageRecord]:
    """Per-period records, newest period first."""
    organization_id = _require_org(organization_id)
    return usage_records.query(
        Key("pk").eq(f"ORG#{organization_id}") & Key("sk").begins_with(USAGE_SORT_PREFIX),
        limit=limit,
        scan_forward=False,
    )
