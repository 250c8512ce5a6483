"""
quotaledger/features/audit/service.py

Best-effort audit sink for subscription transitions.

Transitions hand events to a bounded in-process queue through a
post-commit hook; drain() persists them into the audit_events table.
Enqueueing never blocks and never raises into the transition: a full queue
or a disabled trail drops the event with a warning.
"""

import logging
import queue
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from quotaledger.core.config import settings
from quotaledger.core.errors import AlreadyExistsError
from quotaledger.core.logging import safe_truncate, get_request_id
from quotaledger.features.jobs.registry import JOBS, JobRegistry
from quotaledger.features.store.base import TableSchema
from quotaledger.features.store.conditions import Key
from quotaledger.features.store.repository import EntityStore
from quotaledger.models.audit import AuditEvent
from quotaledger.models.subscription import SubscriptionRecord

logger = logging.getLogger(__name__)

AUDIT_TABLE = TableSchema(name="audit_events", partition_key="pk", sort_key="sk")

AUDIT_SORT_PREFIX = "AUDIT#"

DRAIN_JOB_TYPE = "audit.drain"


def audit_key(event: AuditEvent) -> Dict[str, str]:
    millis = int(event.occurred_at.timestamp() * 1000)
    return {"pk": f"ORG#{event.organization_id}", "sk": f"{AUDIT_SORT_PREFIX}{millis:013d}#{event.event_id}"}


audit_events: EntityStore[AuditEvent] = EntityStore(AuditEvent, AUDIT_TABLE, audit_key)


class AuditTrail:
    def __init__(
        self,
        *,
        repository: Optional[EntityStore[AuditEvent]] = None,
        queue_size: Optional[int] = None,
        enabled: Optional[bool] = None,
        jobs: Optional[JobRegistry] = None,
    ):
        self.repository = repository or audit_events
        self.enabled = settings.AUDIT_ENABLED if enabled is None else enabled
        self._queue: "queue.Queue[AuditEvent]" = queue.Queue(maxsize=queue_size or settings.AUDIT_QUEUE_SIZE)
        self.jobs = jobs or JOBS
        self.dropped = 0
        self._stop = threading.Event()
        self._worker: Optional[threading.Thread] = None

    def enqueue(self, event: AuditEvent) -> bool:
        if not self.enabled:
            logger.debug("audit.disabled", extra={"event_type": event.event_type})
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            logger.warning(
                "audit.dropped",
                extra={
                    "organization_id": event.organization_id,
                    "event_type": event.event_type,
                    "error_code": "audit_queue_full",
                },
            )
            return False
        return True

    def subscription_hook(self, record: SubscriptionRecord, previous: Optional[SubscriptionRecord]) -> None:
        """Post-commit hook for subscription transitions."""
        payload: Dict[str, Any] = {
            "subscription_id": record.subscription_id,
            "tier": record.tier,
            "status": record.status.value,
            "previous_tier": previous.tier if previous else None,
            "previous_status": previous.status.value if previous else None,
        }
        if record.reason:
            payload["reason"] = safe_truncate(record.reason)
        self.enqueue(
            AuditEvent(
                event_id=uuid4().hex,
                organization_id=record.organization_id,
                event_type=f"subscription.{record.action}",
                occurred_at=record.created_at or datetime.now(timezone.utc),
                actor_id=record.changed_by,
                request_id=get_request_id(),
                payload=payload,
            )
        )

    def pending(self) -> int:
        return self._queue.qsize()

    def drain(self, max_events: Optional[int] = None) -> int:
        """
        Persist queued events. Returns the number written.

        Events already stored (same event_id) are skipped. On a store error
        the event is put back and draining stops for this cycle.
        """
        written = 0
        while max_events is None or written < max_events:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                break
            try:
                self.repository.create(event)
            except AlreadyExistsError:
                logger.debug("audit.duplicate", extra={"event_type": event.event_type})
                continue
            except Exception:
                try:
                    self._queue.put_nowait(event)
                except queue.Full:
                    self.dropped += 1
                logger.error(
                    "audit.persist_failed",
                    extra={"organization_id": event.organization_id, "event_type": event.event_type},
                    exc_info=True,
                )
                raise
            written += 1
        return written

    def _drain_cycle(self) -> None:
        if self._queue.empty():
            return
        job = self.jobs.register(DRAIN_JOB_TYPE)
        self.jobs.mark_running(job.job_id)
        try:
            written = self.drain()
        except Exception as exc:
            self.jobs.mark_failed(job.job_id, str(exc))
            return
        self.jobs.mark_succeeded(job.job_id, {"written": written})

    def _run(self, interval: float) -> None:
        while not self._stop.wait(interval):
            self._drain_cycle()
            self.jobs.purge_finished(older_than=timedelta(hours=1))
        # Final flush on shutdown
        self._drain_cycle()

    def start(self, interval: float = 1.0) -> None:
        """Run drain() periodically on a daemon thread."""
        if self._worker is not None and self._worker.is_alive():
            return
        self._stop.clear()
        self._worker = threading.Thread(target=self._run, args=(interval,), name="audit-drain", daemon=True)
        self._worker.start()
        logger.info("audit.worker_started")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._worker is not None:
            self._worker.join(timeout)
            self._worker = None


def list_audit_events(organization_id: str, *, limit: int = 50) -> List[AuditEvent]:
    """Persisted events for an organization, newest first."""
    return audit_events.query(
        Key("pk").eq(f"ORG#{organization_id}") & Key("sk").begins_with(AUDIT_SORT_PREFIX),
        limit=limit,
        scan_forward=False,
    )


_audit_trail: Optional[AuditTrail] = None


def get_audit_trail() -> AuditTrail:
    global _audit_trail
    if _audit_trail is None:
        _audit_trail = AuditTrail()
    return _audit_trail


def reset_audit_trail() -> None:
    """FOR TESTING ONLY."""
    global _audit_trail
    if _audit_trail is not None:
        _audit_trail.stop()
    _audit_trail = None
