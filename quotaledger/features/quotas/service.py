"""
quotaledger/features/quotas/service.py

Quota policy engine.

Handles:
- Admission decisions: current tier -> tier limit -> current-period usage
- Soft limits (check-then-act, the default) and opt-in hard limits
  (single conditional increment with ceiling)
- Quota summary for an organization

Fail closed: any error resolving the subscription, tier or usage
propagates; nothing defaults to allowing the action.

Under the soft limit, concurrent callers can each pass can_start_action
before any of them records, so up to (concurrency - 1) actions beyond the
limit may be admitted. QUOTA_HARD_LIMITS=true removes that window.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from quotaledger.core.config import settings
from quotaledger.core.errors import NoActiveSubscriptionError, QuotaExceededError, ValidationError
from quotaledger.features.periods.service import as_utc, next_period_start
from quotaledger.features.quotas.tiers import TierLimits, get_tier_table
from quotaledger.features.subscriptions.service import get_current, get_latest
from quotaledger.features.usage.service import get_usage_snapshot, record_action
from quotaledger.models.subscription import SubscriptionRecord
from quotaledger.models.usage import RESOURCE_LABELS, ResourceType, UsageRecord, UsageStats

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaCheckResult:
    allowed: bool
    remaining: int
    limit: int
    used: int
    reset_date: datetime
    message: str
    resource_type: str
    tier: str

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["reset_date"] = self.reset_date.isoformat()
        return data


def _resource(resource_type) -> ResourceType:
    try:
        return ResourceType(resource_type)
    except ValueError:
        raise ValidationError(f"Unknown resource type '{resource_type}'")


def _message(resource: ResourceType, remaining: int, limit: int) -> str:
    label = RESOURCE_LABELS[resource]
    if remaining > 0:
        return f"{remaining} {label} remaining this month"
    return f"Monthly limit of {limit} {label} exceeded. Upgrade subscription for more {label}."


def _resolve_subscription(organization_id: str) -> SubscriptionRecord:
    subscription = get_current(organization_id)
    if subscription is None:
        logger.warning(
            "quota.no_active_subscription",
            extra={"organization_id": organization_id, "error_code": "no_active_subscription"},
        )
        raise NoActiveSubscriptionError(
            f"No active subscription for organization {organization_id}",
            details={"organization_id": organization_id},
        )
    return subscription


def _evaluate(
    resource: ResourceType,
    subscription: SubscriptionRecord,
    limits: TierLimits,
    usage: UsageStats,
    now: datetime,
) -> QuotaCheckResult:
    limit = limits.limit_for(resource)
    used = usage.used(resource)
    remaining = max(limit - used, 0)
    return QuotaCheckResult(
        allowed=remaining > 0,
        remaining=remaining,
        limit=limit,
        used=used,
        reset_date=next_period_start(now),
        message=_message(resource, remaining, limit),
        resource_type=resource.value,
        tier=subscription.tier,
    )


def can_start_action(organization_id: str, resource_type, now: Optional[datetime] = None) -> QuotaCheckResult:
    """
    May the organization perform one more action of this type?

    Raises:
        NoActiveSubscriptionError: No ACTIVE/PAID subscription.
        InvalidTierError: The subscription's tier is not configured.
    """
    resource = _resource(resource_type)
    ts = as_utc(now)
    subscription = _resolve_subscription(organization_id)
    limits = get_tier_table().get(subscription.tier)
    usage = get_usage_snapshot(organization_id, now=ts)

    result = _evaluate(resource, subscription, limits, usage, ts)
    if not result.allowed:
        logger.warning(
            "quota.denied",
            extra={
                "organization_id": organization_id,
                "resource_type": resource.value,
                "error_code": "quota_exceeded",
                "tier": subscription.tier,
                "limit": result.limit,
                "used": result.used,
            },
        )
    return result


def require_action(organization_id: str, resource_type, now: Optional[datetime] = None) -> QuotaCheckResult:
    """
    can_start_action, raising when the action is not allowed.

    Raises:
        QuotaExceededError: With remaining/limit/reset_date payload.
    """
    result = can_start_action(organization_id, resource_type, now=now)
    if not result.allowed:
        raise QuotaExceededError(
            result.message,
            remaining=result.remaining,
            limit=result.limit,
            reset_date=result.reset_date.isoformat(),
            resource_type=result.resource_type,
        )
    return result


def admit_and_record(
    organization_id: str,
    resource_type,
    *,
    hard_limit: Optional[bool] = None,
    now: Optional[datetime] = None,
) -> UsageRecord:
    """
    Admit one action and record it.

    Soft mode (default): require_action then record_action; racy by design.
    Hard mode: one conditional increment that fails if the counter would
    exceed the tier limit.

    Raises:
        QuotaExceededError, NoActiveSubscriptionError, InvalidTierError
    """
    hard = settings.QUOTA_HARD_LIMITS if hard_limit is None else hard_limit
    resource = _resource(resource_type)
    ts = as_utc(now)

    if not hard:
        require_action(organization_id, resource, now=ts)
        return record_action(organization_id, resource, now=ts)

    subscription = _resolve_subscription(organization_id)
    limits = get_tier_table().get(subscription.tier)
    return record_action(organization_id, resource, ceiling=limits.limit_for(resource), now=ts)


def get_quota_summary(organization_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Subscription, usage and per-resource decisions for one organization.

    An organization without an active subscription still gets a summary
    (with no limits and every resource denied) so admins can see why.
    """
    ts = as_utc(now)
    usage = get_usage_snapshot(organization_id, now=ts)
    current = get_current(organization_id)
    shown = current or get_latest(organization_id)

    summary: Dict[str, Any] = {
        "organization_id": organization_id,
        "period": usage.period,
        "reset_date": next_period_start(ts).isoformat(),
        "subscription": {
            "tier": shown.tier if shown else None,
            "status": shown.status.value if shown else None,
            "active": current is not None,
        },
        "usage": usage.model_dump(),
        "limits": None,
        "resources": {},
    }
    if current is None:
        for resource in ResourceType:
            summary["resources"][resource.value] = {
                "allowed": False,
                "remaining": 0,
                "limit": None,
                "used": usage.used(resource),
                "message": "No active subscription",
            }
        return summary

    limits = get_tier_table().get(current.tier)
    summary["limits"] = limits.model_dump()
    for resource in ResourceType:
        result = _evaluate(resource, current, limits, usage, ts)
        summary["resources"][resource.value] = {
            "allowed": result.allowed,
            "remaining": result.remaining,
            "limit": result.limit,
            "used": result.used,
            "message": result.message,
        }
    return summary
