import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from quotaledger.core.logging import latency_bucket_ms, request_id_ctx_var

logger = logging.getLogger("quotaledger.http")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Correlate every request with a request_id.

    The id is taken from the incoming header (or generated), bound to the
    logging context for the duration of the request, echoed on the response
    and attached to the completion log along with the calling organization.
    """

    def __init__(self, app, header_name: str = "x-request-id", org_header: str = "x-principal-org"):
        super().__init__(app)
        self.header_name = header_name
        self.org_header = org_header

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
        latency_ms = (time.perf_counter() - start) * 1000

        response.headers[self.header_name] = rid
        status = getattr(response, "status_code", None)

        logger.log(
            logging.WARNING if status is not None and status >= 500 else logging.INFO,
            "request.complete",
            extra={
                "request_id": rid,
                "organization_id": request.headers.get(self.org_header),
                "path": request.url.path,
                "method": request.method,
                "status": status,
                "latency_bucket": latency_bucket_ms(latency_ms),
            },
        )
        return response
