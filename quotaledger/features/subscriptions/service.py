"""
quotaledger/features/subscriptions/service.py

Subscription state machine over an append-only history.

Handles:
- Initial subscription, tier override, suspend, reactivate, cancel
- Each transition appends one immutable record (conditional create)
- Current subscription derived at read time: newest ACTIVE/PAID record
- Post-commit hooks (audit sink); hook failures never roll back a transition
"""

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List, Optional, Tuple
from uuid import uuid4

from quotaledger.core.errors import (
    AlreadyExistsError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from quotaledger.features.periods.service import as_utc, current_period_key, period_bounds
from quotaledger.features.quotas.tiers import get_tier_table
from quotaledger.features.store.base import TableSchema
from quotaledger.features.store.conditions import Key
from quotaledger.features.store.repository import EntityStore
from quotaledger.models.subscription import (
    SubscriptionRecord,
    SubscriptionStats,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_TABLE = TableSchema(name="subscriptions", partition_key="pk", sort_key="sk")

SUB_SORT_PREFIX = "SUB#"

subscription_records: EntityStore[SubscriptionRecord] = EntityStore(
    SubscriptionRecord,
    SUBSCRIPTIONS_TABLE,
    lambda record: {"pk": f"ORG#{record.organization_id}", "sk": record.record_key},
)

# (new record, previous record or None)
PostCommitHook = Callable[[SubscriptionRecord, Optional[SubscriptionRecord]], None]

_post_commit_hooks: List[PostCommitHook] = []
_hook_failures: Deque[Dict[str, str]] = deque(maxlen=100)


def register_post_commit_hook(hook: PostCommitHook) -> None:
    if hook not in _post_commit_hooks:
        _post_commit_hooks.append(hook)


def unregister_post_commit_hook(hook: PostCommitHook) -> None:
    if hook in _post_commit_hooks:
        _post_commit_hooks.remove(hook)


def clear_post_commit_hooks() -> None:
    _post_commit_hooks.clear()
    _hook_failures.clear()


def get_hook_failures() -> List[Dict[str, str]]:
    """Recent post-commit hook failures, oldest first."""
    return list(_hook_failures)


def _run_post_commit_hooks(record: SubscriptionRecord, previous: Optional[SubscriptionRecord]) -> None:
    for hook in list(_post_commit_hooks):
        try:
            hook(record, previous)
        except Exception as exc:
            hook_name = getattr(hook, "__name__", repr(hook))
            _hook_failures.append(
                {"hook": hook_name, "subscription_id": record.subscription_id, "error": str(exc)}
            )
            logger.error(
                "subscription.hook_failed",
                extra={
                    "organization_id": record.organization_id,
                    "event_type": record.action,
                    "error_code": "hook_failed",
                    "hook": hook_name,
                },
                exc_info=True,
            )


def _record_millis(record: SubscriptionRecord) -> int:
    return int(record.record_key.split("#")[1])


def _record_key(millis: int, subscription_id: str) -> str:
    return f"{SUB_SORT_PREFIX}{millis:013d}#{subscription_id[:8]}"


def _partition(organization_id: str):
    return Key("pk").eq(f"ORG#{organization_id}") & Key("sk").begins_with(SUB_SORT_PREFIX)


def _require_org(organization_id: str) -> str:
    if not organization_id or not str(organization_id).strip():
        raise ValidationError("organization_id is required")
    return str(organization_id)


def _require_tier(tier: str) -> str:
    get_tier_table().get(tier)
    return tier


def _status(status) -> SubscriptionStatus:
    try:
        return SubscriptionStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown subscription status '{status}'")


def _ordering(record: SubscriptionRecord) -> Tuple[datetime, str]:
    return (record.created_at, record.record_key)


def get_history(organization_id: str) -> List[SubscriptionRecord]:
    """Full append-only history, newest first."""
    organization_id = _require_org(organization_id)
    records = subscription_records.find_all(_partition(organization_id), scan_forward=False)
    return sorted(records, key=_ordering, reverse=True)


def get_latest(organization_id: str) -> Optional[SubscriptionRecord]:
    """Newest record regardless of status."""
    organization_id = _require_org(organization_id)
    records = subscription_records.query(_partition(organization_id), limit=1, scan_forward=False)
    return records[0] if records else None


def get_current(organization_id: str) -> Optional[SubscriptionRecord]:
    """
    The organization's current subscription.

    The newest record whose status is ACTIVE or PAID, ties broken by sort
    key. Later non-active records (suspended, pending, cancelled) do not
    hide it; transition guards use get_latest instead.
    """
    for record in get_history(organization_id):
        if record.is_active:
            return record
    return None


def _append(
    organization_id: str,
    *,
    tier: str,
    status: SubscriptionStatus,
    action: str,
    previous: Optional[SubscriptionRecord],
    reason: Optional[str],
    actor: Optional[str],
    now: Optional[datetime],
) -> SubscriptionRecord:
    ts = as_utc(now)
    millis = int(ts.timestamp() * 1000)
    if previous is not None and millis <= _record_millis(previous):
        # Keep the per-organization history strictly ordered even within one millisecond
        millis = _record_millis(previous) + 1
        ts = datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    subscription_id = uuid4().hex
    record = SubscriptionRecord(
        subscription_id=subscription_id,
        organization_id=organization_id,
        record_key=_record_key(millis, subscription_id),
        tier=tier,
        status=status,
        action=action,
        reason=reason,
        changed_by=actor,
        previous_tier=previous.tier if previous else None,
        previous_status=previous.status if previous else None,
    )
    created = subscription_records.create(record, now=ts)

    logger.info(
        "subscription.transition",
        extra={
            "organization_id": organization_id,
            "event_type": action,
            "actor_id": actor,
            "tier": tier,
            "status": status.value,
            "previous_tier": created.previous_tier,
            "previous_status": created.previous_status.value if created.previous_status else None,
        },
    )
    _run_post_commit_hooks(created, previous)
    return created


def _require_history(organization_id: str) -> SubscriptionRecord:
    previous = get_latest(organization_id)
    if previous is None:
        raise NotFoundError(
            f"No subscription found for organization {organization_id}",
            details={"organization_id": organization_id},
        )
    return previous


def start_subscription(
    organization_id: str,
    tier: str,
    *,
    status=SubscriptionStatus.ACTIVE,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SubscriptionRecord:
    """
    Write the first record for an organization.

    Raises:
        AlreadyExistsError: The organization already has history.
        InvalidTierError: Unknown tier.
    """
    organization_id = _require_org(organization_id)
    _require_tier(tier)
    if get_latest(organization_id) is not None:
        raise AlreadyExistsError(
            f"Organization {organization_id} already has a subscription",
            details={"organization_id": organization_id},
        )
    return _append(
        organization_id,
        tier=tier,
        status=_status(status),
        action="created",
        previous=None,
        reason=reason,
        actor=actor,
        now=now,
    )


def override_tier(
    organization_id: str,
    new_tier: str,
    reason: str,
    *,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SubscriptionRecord:
    """Append {tier: new_tier, status: ACTIVE}. Prior records are untouched."""
    organization_id = _require_org(organization_id)
    _require_tier(new_tier)
    previous = _require_history(organization_id)
    return _append(
        organization_id,
        tier=new_tier,
        status=SubscriptionStatus.ACTIVE,
        action="tier_override",
        previous=previous,
        reason=reason,
        actor=actor,
        now=now,
    )


def suspend(
    organization_id: str,
    reason: str,
    *,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SubscriptionRecord:
    """Append {tier: unchanged, status: SUSPENDED}."""
    organization_id = _require_org(organization_id)
    previous = _require_history(organization_id)
    if previous.status in (SubscriptionStatus.SUSPENDED, SubscriptionStatus.CANCELLED):
        raise InvalidTransitionError(
            f"Cannot suspend a {previous.status.value} subscription",
            details={"organization_id": organization_id, "status": previous.status.value},
        )
    return _append(
        organization_id,
        tier=previous.tier,
        status=SubscriptionStatus.SUSPENDED,
        action="suspended",
        previous=previous,
        reason=reason,
        actor=actor,
        now=now,
    )


def reactivate(
    organization_id: str,
    *,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SubscriptionRecord:
    """Append {tier: unchanged, status: ACTIVE}."""
    organization_id = _require_org(organization_id)
    previous = _require_history(organization_id)
    if previous.is_active:
        raise InvalidTransitionError(
            f"Subscription is already {previous.status.value}",
            details={"organization_id": organization_id, "status": previous.status.value},
        )
    return _append(
        organization_id,
        tier=previous.tier,
        status=SubscriptionStatus.ACTIVE,
        action="reactivated",
        previous=previous,
        reason=reason,
        actor=actor,
        now=now,
    )


def cancel(
    organization_id: str,
    reason: str,
    *,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SubscriptionRecord:
    """Append {tier: unchanged, status: CANCELLED}."""
    organization_id = _require_org(organization_id)
    previous = _require_history(organization_id)
    if previous.status == SubscriptionStatus.CANCELLED:
        raise InvalidTransitionError(
            "Subscription is already CANCELLED",
            details={"organization_id": organization_id, "status": previous.status.value},
        )
    return _append(
        organization_id,
        tier=previous.tier,
        status=SubscriptionStatus.CANCELLED,
        action="cancelled",
        previous=previous,
        reason=reason,
        actor=actor,
        now=now,
    )


def get_subscription_stats(now: Optional[datetime] = None) -> SubscriptionStats:
    """
    Platform-wide counts.

    Tier and status counts are over each organization's newest record;
    changes_this_period counts every record appended in the current period.
    """
    ts = as_utc(now)
    period = current_period_key(ts)
    start, end = period_bounds(period)

    latest: Dict[str, SubscriptionRecord] = {}
    changes = 0
    for record in subscription_records.find_all():
        if start <= record.created_at < end:
            changes += 1
        seen = latest.get(record.organization_id)
        if seen is None or _ordering(record) > _ordering(seen):
            latest[record.organization_id] = record

    by_tier: Dict[str, int] = {}
    by_status: Dict[str, int] = {}
    for record in latest.values():
        by_tier[record.tier] = by_tier.get(record.tier, 0) + 1
        by_status[record.status.value] = by_status.get(record.status.value, 0) + 1

    return SubscriptionStats(
        total_organizations=len(latest),
        active_subscriptions=sum(1 for r in latest.values() if r.is_active),
        by_tier=by_tier,
        by_status=by_status,
        changes_this_period=changes,
        period=period,
    )
