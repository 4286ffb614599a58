import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from cargo_subscriptions.core.logging import LOGGER_NAME, correlation_scope, latency_bucket_ms

REQUEST_ID_HEADER = "x-request-id"
MAX_REQUEST_ID_LENGTH = 100

logger = logging.getLogger(LOGGER_NAME)


def _incoming_request_id(request: Request, header_name: str) -> str:
    rid = (request.headers.get(header_name) or "").strip()
    if not rid or len(rid) > MAX_REQUEST_ID_LENGTH:
        return uuid4().hex
    return rid


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Correlate every request: bind its id for logging, echo it back, log the outcome."""

    def __init__(self, app, header_name: str = REQUEST_ID_HEADER):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next):
        rid = _incoming_request_id(request, self.header_name)
        request.state.request_id = rid

        started = time.perf_counter()
        with correlation_scope(rid):
            response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        response.headers[self.header_name] = rid
        logger.log(
            logging.WARNING if response.status_code >= 500 else logging.INFO,
            "request.complete",
            extra={
                "request_id": rid,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_bucket": latency_bucket_ms(elapsed_ms),
            },
        )
        return response
