"""
quotaledger/models/job.py

Ephemeral background job state.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


FINISHED_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED})


class JobRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    job_type: str
    status: JobStatus = JobStatus.PENDING
    created_at: datetime
    updated_at: datetime
    attempts: int = 0
    error: Optional[str] = None
    result: Dict[str, Any] = Field(default_factory=dict)
