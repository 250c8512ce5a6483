"""
Organization quota and usage API.

Thin wrappers over the quota engine and usage ledger; no business logic.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from quotaledger.api.deps import Principal, require_org_access
from quotaledger.features.quotas.service import admit_and_record, can_start_action, get_quota_summary
from quotaledger.features.usage.service import get_usage_history, get_usage_snapshot, record_action
from quotaledger.models.usage import ResourceType

logger = logging.getLogger("quotaledger.api.quotas")

router = APIRouter(prefix="/v1/orgs", tags=["quotas"])


class RecordUsageRequest(BaseModel):
    amount: int = Field(default=1, ge=1)


class ConsumeRequest(BaseModel):
    hard_limit: Optional[bool] = Field(default=None, description="Override QUOTA_HARD_LIMITS for this call")


@router.get("/{org_id}/quota")
def quota_summary(org_id: str, principal: Principal = Depends(require_org_access)):
    return get_quota_summary(org_id)


@router.get("/{org_id}/quota/{resource_type}")
def quota_check(org_id: str, resource_type: ResourceType, principal: Principal = Depends(require_org_access)):
    return can_start_action(org_id, resource_type).to_dict()


@router.post("/{org_id}/quota/{resource_type}/consume")
def quota_consume(
    org_id: str,
    resource_type: ResourceType,
    body: Optional[ConsumeRequest] = None,
    principal: Principal = Depends(require_org_access),
):
    hard_limit = body.hard_limit if body else None
    record = admit_and_record(org_id, resource_type, hard_limit=hard_limit)
    return {"usage": record.model_dump(mode="json"), "resource_type": resource_type.value}


@router.get("/{org_id}/usage")
def usage_snapshot(
    org_id: str,
    period: Optional[str] = Query(None, description="YYYY-MM; defaults to the current period"),
    principal: Principal = Depends(require_org_access),
):
    return get_usage_snapshot(org_id, period=period).model_dump()


@router.get("/{org_id}/usage/history")
def usage_history(
    org_id: str,
    limit: int = Query(12, ge=1, le=120),
    principal: Principal = Depends(require_org_access),
):
    records = get_usage_history(org_id, limit=limit)
    return {"organization_id": org_id, "records": [r.model_dump(mode="json") for r in records]}


@router.post("/{org_id}/usage/{resource_type}")
def usage_record(
    org_id: str,
    resource_type: ResourceType,
    body: Optional[RecordUsageRequest] = None,
    principal: Principal = Depends(require_org_access),
):
    amount = body.amount if body else 1
    record = record_action(org_id, resource_type, amount=amount)
    return record.model_dump(mode="json")
