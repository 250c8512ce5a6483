"""
quotaledger/models/entity.py

Base for entities kept in the versioned entity store.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Entity(BaseModel):
    """
    Common store-managed fields.

    version starts at 1 on create and increases by exactly 1 on every
    successful update. Soft-deleted entities keep their row with
    is_deleted=True.
    """
    model_config = ConfigDict(frozen=True)

    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None
