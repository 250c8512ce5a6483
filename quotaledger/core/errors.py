"""Error taxonomy and FastAPI handlers."""

import logging
import builtins
from typing import Any, Dict, Optional
from uuid import uuid4

from starlette.exceptions import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from quotaledger.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.details = details or {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class AlreadyExistsError(ConflictError):
    code = "already_exists"


class VersionConflictError(ConflictError):
    """Another writer advanced the version chain first."""
    code = "version_conflict"

    def __init__(self, message: str, *, expected_version: int, current_version: Optional[int] = None, **kwargs):
        details = {"expected_version": expected_version, "current_version": current_version}
        super().__init__(message, details=details, **kwargs)
        self.expected_version = expected_version
        self.current_version = current_version


class InvalidTransitionError(ConflictError):
    code = "invalid_transition"


class QuotaExceededError(AppError):
    code = "quota_exceeded"
    status_code = 403

    def __init__(
        self,
        message: str,
        *,
        remaining: int = 0,
        limit: Optional[int] = None,
        reset_date: Optional[str] = None,
        resource_type: Optional[str] = None,
        **kwargs,
    ):
        details = {
            "remaining": remaining,
            "limit": limit,
            "reset_date": reset_date,
            "resource_type": resource_type,
        }
        super().__init__(message, details=details, **kwargs)
        self.remaining = remaining
        self.limit = limit
        self.reset_date = reset_date
        self.resource_type = resource_type


class NoActiveSubscriptionError(AppError):
    code = "no_active_subscription"
    status_code = 403


class InvalidTierError(AppError, ValueError):
    code = "invalid_tier"
    status_code = 422


class StorageUnavailableError(AppError):
    """Transient I/O failure talking to the backing store."""
    code = "storage_unavailable"
    status_code = 503


class BatchPartialFailureError(AppError):
    """A chunk of a batch operation failed after earlier chunks committed."""
    code = "batch_partial_failure"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        failed_chunk_index: int,
        total_chunks: int,
        committed: Optional[list] = None,
        cause: Optional[BaseException] = None,
        **kwargs,
    ):
        committed = list(committed or [])
        details = {
            "operation": operation,
            "failed_chunk_index": failed_chunk_index,
            "total_chunks": total_chunks,
            "committed_count": len(committed),
        }
        super().__init__(message, details=details, **kwargs)
        self.operation = operation
        self.failed_chunk_index = failed_chunk_index
        self.total_chunks = total_chunks
        self.committed = committed
        self.cause = cause


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, details: Optional[dict] = None) -> dict:
    error = {"code": code, "message": message, "request_id": request_id}
    if details:
        error["details"] = details
    return {
        "error": error,
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.details)
    logger = logging.getLogger("quotaledger")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("quotaledger")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("quotaledger")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
