"""
quotaledger/models/audit.py

Audit events for administrative subscription transitions.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import Field

from quotaledger.models.entity import Entity


class AuditEvent(Entity):
    """
    Persisted audit event.

    Keyed by organization and "AUDIT#<epoch ms>#<event_id>" so a partition
    query returns events in occurrence order.
    """
    event_id: str
    organization_id: str
    event_type: str
    occurred_at: datetime
    actor_id: Optional[str] = None
    request_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
