"""
Health endpoints.

Lightweight probes for operational monitoring; no secrets exposed.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from quotaledger.core.database import check_connection, get_database_url
from quotaledger.features.store.factory import get_store

logger = logging.getLogger("quotaledger")

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness: store selected and, with a database configured, reachable."""
    store = get_store()
    backend = type(store).__name__
    if get_database_url() and backend == "SqlKeyValueStore" and not check_connection():
        logger.error("[readyz] database unreachable")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
    return {"status": "ok", "store": backend}
