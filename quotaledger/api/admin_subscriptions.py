"""
Admin-only subscription router.

Requires a principal role in ADMIN_ROLES for every endpoint. Every
transition appends a history record; nothing here edits history.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from quotaledger.api.deps import Principal, require_admin
from quotaledger.core.logging import log_event
from quotaledger.features.subscriptions import service as subscriptions
from quotaledger.models.subscription import SubscriptionStatus

logger = logging.getLogger("quotaledger.api.admin_subscriptions")

router = APIRouter(prefix="/v1/admin/subscriptions", tags=["admin-subscriptions"])


class StartSubscriptionRequest(BaseModel):
    tier: str = Field(..., min_length=1)
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    reason: Optional[str] = None


class OverrideRequest(BaseModel):
    tier: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, max_length=500)


class ReasonRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class ReactivateRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


def _audit_log(action: str, org_id: str, principal: Principal, record) -> None:
    log_event(
        "info",
        "admin.subscription_transition",
        organization_id=org_id,
        actor_id=principal.principal_id,
        event_type=action,
        extra={"tier": record.tier, "status": record.status.value, "role": principal.role},
    )


@router.get("/stats")
def subscription_stats(principal: Principal = Depends(require_admin)):
    return subscriptions.get_subscription_stats().model_dump()


@router.post("/{org_id}", status_code=201)
def start_subscription(org_id: str, body: StartSubscriptionRequest, principal: Principal = Depends(require_admin)):
    record = subscriptions.start_subscription(
        org_id, body.tier, status=body.status, actor=principal.principal_id, reason=body.reason
    )
    _audit_log("created", org_id, principal, record)
    return record.model_dump(mode="json")


@router.post("/{org_id}/override")
def override_tier(org_id: str, body: OverrideRequest, principal: Principal = Depends(require_admin)):
    record = subscriptions.override_tier(org_id, body.tier, body.reason, actor=principal.principal_id)
    _audit_log("tier_override", org_id, principal, record)
    return record.model_dump(mode="json")


@router.post("/{org_id}/suspend")
def suspend(org_id: str, body: ReasonRequest, principal: Principal = Depends(require_admin)):
    record = subscriptions.suspend(org_id, body.reason, actor=principal.principal_id)
    _audit_log("suspended", org_id, principal, record)
    return record.model_dump(mode="json")


@router.post("/{org_id}/reactivate")
def reactivate(org_id: str, body: Optional[ReactivateRequest] = None, principal: Principal = Depends(require_admin)):
    reason = body.reason if body else None
    record = subscriptions.reactivate(org_id, actor=principal.principal_id, reason=reason)
    _audit_log("reactivated", org_id, principal, record)
    return record.model_dump(mode="json")


@router.post("/{org_id}/cancel")
def cancel(org_id: str, body: ReasonRequest, principal: Principal = Depends(require_admin)):
    record = subscriptions.cancel(org_id, body.reason, actor=principal.principal_id)
    _audit_log("cancelled", org_id, principal, record)
    return record.model_dump(mode="json")


@router.get("/{org_id}/current")
def current(org_id: str, principal: Principal = Depends(require_admin)):
    record = subscriptions.get_current(org_id)
    return {"organization_id": org_id, "subscription": record.model_dump(mode="json") if record else None}


@router.get("/{org_id}/history")
def history(org_id: str, principal: Principal = Depends(require_admin)):
    records = subscriptions.get_history(org_id)
    return {"organization_id": org_id, "history": [r.model_dump(mode="json") for r in records]}
