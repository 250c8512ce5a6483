"""
quotaledger/features/quotas/tiers.py

Tier limit table.

Deploy-time data, not code: TIER_LIMITS_JSON (inline) or TIER_LIMITS_FILE
override the built-in defaults. The table is read-only at runtime.
"""

import json
import logging
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from quotaledger.core.errors import InvalidTierError
from quotaledger.models.usage import ResourceType

logger = logging.getLogger(__name__)


# Default tier configurations
DEFAULT_TIER_LIMITS: Dict[str, Dict[str, Any]] = {
    "L1": {
        "max_users": 5,
        "max_runs_per_month": 10,
        "max_exports_per_month": 5,
        "storage_units": 1,
        "api_calls_per_month": 1000,
    },
    "L2": {
        "max_users": 15,
        "max_runs_per_month": 25,
        "max_exports_per_month": 15,
        "storage_units": 5,
        "api_calls_per_month": 5000,
    },
    "L3": {
        "max_users": 50,
        "max_runs_per_month": 100,
        "max_exports_per_month": 50,
        "storage_units": 20,
        "api_calls_per_month": 20000,
    },
    "LE": {
        "max_users": 500,
        "max_organizations": 10,
        "max_runs_per_month": 500,
        "max_exports_per_month": 200,
        "storage_units": 100,
        "api_calls_per_month": 100000,
    },
}

# Limit attribute applied to each resource type
TIER_LIMIT_FIELDS: Dict[ResourceType, str] = {
    ResourceType.PROFILING_RUN: "max_runs_per_month",
    ResourceType.EXPORT: "max_exports_per_month",
    ResourceType.API_CALL: "api_calls_per_month",
    ResourceType.STORAGE: "storage_units",
    ResourceType.USER: "max_users",
}


class TierLimits(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    max_users: int = Field(ge=0)
    max_organizations: Optional[int] = Field(default=None, ge=0)
    max_runs_per_month: int = Field(ge=0)
    max_exports_per_month: int = Field(ge=0)
    storage_units: int = Field(ge=0)
    api_calls_per_month: int = Field(ge=0)

    def limit_for(self, resource_type: ResourceType) -> int:
        return getattr(self, TIER_LIMIT_FIELDS[ResourceType(resource_type)])


class TierLimitTable(BaseModel):
    model_config = ConfigDict(frozen=True)

    tiers: Dict[str, TierLimits]

    @field_validator("tiers")
    @classmethod
    def _non_empty(cls, value: Dict[str, TierLimits]) -> Dict[str, TierLimits]:
        if not value:
            raise ValueError("tier table must define at least one tier")
        blank = [name for name in value if not name.strip()]
        if blank:
            raise ValueError("tier names must be non-empty")
        return value

    def __contains__(self, tier: str) -> bool:
        return tier in self.tiers

    def get(self, tier: str) -> TierLimits:
        """
        Raises:
            InvalidTierError: If the tier is not configured.
        """
        limits = self.tiers.get(tier)
        if limits is None:
            raise InvalidTierError(
                f"Unknown tier '{tier}'",
                details={"tier": tier, "known_tiers": sorted(self.tiers)},
            )
        return limits


def load_tier_limits(settings_obj=None) -> TierLimitTable:
    """
    Load and validate the tier table from configuration.

    Raises:
        OSError: TIER_LIMITS_FILE cannot be read.
        ValueError: Malformed JSON or invalid limits (pydantic ValidationError
            is a ValueError).
    """
    if settings_obj is None:
        from quotaledger.core.config import settings as settings_obj

    if settings_obj.TIER_LIMITS_JSON:
        raw = json.loads(settings_obj.TIER_LIMITS_JSON)
        source = "env"
    elif settings_obj.TIER_LIMITS_FILE:
        with open(settings_obj.TIER_LIMITS_FILE, "r", encoding="utf-8") as fh:
            raw = json.load(fh)
        source = settings_obj.TIER_LIMITS_FILE
    else:
        raw = DEFAULT_TIER_LIMITS
        source = "defaults"

    if not isinstance(raw, dict):
        raise ValueError("tier table must be a JSON object keyed by tier")

    table = TierLimitTable.model_validate({"tiers": raw})
    logger.debug("tiers.loaded", extra={"status": source, "tier_count": len(table.tiers)})
    return table


_tier_table: Optional[TierLimitTable] = None


def get_tier_table() -> TierLimitTable:
    global _tier_table
    if _tier_table is None:
        _tier_table = load_tier_limits()
    return _tier_table


def set_tier_table(table: Optional[TierLimitTable]) -> None:
    """Install a table directly (tests) or clear it so the next read reloads."""
    global _tier_table
    _tier_table = table
