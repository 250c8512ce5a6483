"""
quotaledger/features/jobs/registry.py

Ephemeral background job state, owned by a single process.

The table lives in this process's memory: it does not survive restarts
and is not visible to other instances. Use it for local worker bookkeeping
only, never for state another instance must read.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from quotaledger.core.errors import InvalidTransitionError, NotFoundError
from quotaledger.models.job import FINISHED_STATUSES, JobRecord, JobStatus

logger = logging.getLogger(__name__)


class JobRegistry:
    def __init__(self):
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = threading.Lock()

    def _transition(self, job_id: str, status: JobStatus, **changes) -> JobRecord:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"Unknown job {job_id}")
            if job.status in FINISHED_STATUSES:
                raise InvalidTransitionError(f"Job {job_id} already {job.status.value}")
            updated = job.model_copy(
                update={"status": status, "updated_at": datetime.now(timezone.utc), **changes}
            )
            self._jobs[job_id] = updated
        logger.debug("job.transition", extra={"event_type": job.job_type, "status": status.value, "job_id": job_id})
        return updated

    def register(self, job_type: str, job_id: Optional[str] = None) -> JobRecord:
        now = datetime.now(timezone.utc)
        job = JobRecord(job_id=job_id or uuid4().hex, job_type=job_type, created_at=now, updated_at=now)
        with self._lock:
            if job.job_id in self._jobs:
                raise InvalidTransitionError(f"Job {job.job_id} already registered")
            self._jobs[job.job_id] = job
        return job

    def mark_running(self, job_id: str) -> JobRecord:
        with self._lock:
            attempts = self._jobs[job_id].attempts + 1 if job_id in self._jobs else 1
        return self._transition(job_id, JobStatus.RUNNING, attempts=attempts)

    def mark_succeeded(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> JobRecord:
        return self._transition(job_id, JobStatus.SUCCEEDED, result=dict(result or {}))

    def mark_failed(self, job_id: str, error: str) -> JobRecord:
        return self._transition(job_id, JobStatus.FAILED, error=error[:500])

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(self, job_type: Optional[str] = None, status: Optional[JobStatus] = None) -> List[JobRecord]:
        with self._lock:
            jobs = list(self._jobs.values())
        if job_type is not None:
            jobs = [j for j in jobs if j.job_type == job_type]
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        return sorted(jobs, key=lambda j: j.created_at)

    def purge_finished(self, older_than: timedelta = timedelta(0)) -> int:
        """Drop finished jobs last updated more than `older_than` ago."""
        cutoff = datetime.now(timezone.utc) - older_than
        with self._lock:
            stale = [
                job_id for job_id, job in self._jobs.items()
                if job.status in FINISHED_STATUSES and job.updated_at <= cutoff
            ]
            for job_id in stale:
                del self._jobs[job_id]
        return len(stale)


JOBS = JobRegistry()
