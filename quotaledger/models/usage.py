"""
quotaledger/models/usage.py

Per-organization, per-period usage counters.
"""

from enum import Enum
from typing import Dict
from pydantic import BaseModel, ConfigDict, Field

from quotaledger.models.entity import Entity


class ResourceType(str, Enum):
    """Resource-consuming actions gated by quota."""
    PROFILING_RUN = "profiling_run"
    EXPORT = "export"
    API_CALL = "api_call"
    STORAGE = "storage"
    USER = "user"


# Counter attribute incremented by record_action for each resource type
USAGE_COUNTER_FIELDS: Dict[ResourceType, str] = {
    ResourceType.PROFILING_RUN: "runs_this_period",
    ResourceType.EXPORT: "exports_this_period",
    ResourceType.API_CALL: "api_calls_this_period",
    ResourceType.STORAGE: "storage_used_units",
    ResourceType.USER: "current_users",
}


# Human-readable plural used in quota messages
RESOURCE_LABELS: Dict[ResourceType, str] = {
    ResourceType.PROFILING_RUN: "profiling runs",
    ResourceType.EXPORT: "exports",
    ResourceType.API_CALL: "API calls",
    ResourceType.STORAGE: "storage units",
    ResourceType.USER: "users",
}


class UsageRecord(Entity):
    """
    Stored usage row, keyed by (organization_id, period).

    Counters never decrease within a period. The only reset is a new
    record under the next period key.
    """
    organization_id: str
    period: str
    runs_this_period: int = Field(default=0, ge=0)
    exports_this_period: int = Field(default=0, ge=0)
    api_calls_this_period: int = Field(default=0, ge=0)
    storage_used_units: int = Field(default=0, ge=0)
    current_users: int = Field(default=0, ge=0)


class UsageStats(BaseModel):
    """Point-in-time usage for one period. A missing record reads as zeros."""
    model_config = ConfigDict(frozen=True)

    organization_id: str
    period: str
    runs_this_period: int = 0
    exports_this_period: int = 0
    api_calls_this_period: int = 0
    storage_used_units: int = 0
    current_users: int = 0

    def used(self, resource_type: ResourceType) -> int:
        return getattr(self, USAGE_COUNTER_FIELDS[ResourceType(resource_type)])
