"""
quotaledger/models/subscription.py

Append-only subscription history.

Each administrative transition writes a new SubscriptionRecord; existing
records are never updated. The current subscription is derived from the
history at read time.
"""

from enum import Enum
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict, Field

from quotaledger.models.entity import Entity


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAID = "PAID"
    SUSPENDED = "SUSPENDED"
    PENDING = "PENDING"
    CANCELLED = "CANCELLED"


# Statuses that grant quota
ACTIVE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.PAID})


class SubscriptionRecord(Entity):
    """
    One immutable history entry.

    record_key is the sort key: "SUB#<13-digit epoch ms>#<id>", so
    lexicographic order follows creation order and breaks timestamp ties.
    """
    subscription_id: str
    organization_id: str
    record_key: str
    tier: str
    status: SubscriptionStatus
    action: str
    reason: Optional[str] = None
    changed_by: Optional[str] = None
    previous_tier: Optional[str] = None
    previous_status: Optional[SubscriptionStatus] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class SubscriptionStats(BaseModel):
    """Counts over each organization's latest record."""
    model_config = ConfigDict(frozen=True)

    total_organizations: int = 0
    active_subscriptions: int = 0
    by_tier: Dict[str, int] = Field(default_factory=dict)
    by_status: Dict[str, int] = Field(default_factory=dict)
    changes_this_period: int = 0
    period: str
