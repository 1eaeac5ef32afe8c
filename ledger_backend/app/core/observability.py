"""
Observability Middleware.

Adds correlation IDs to requests and to every `ledger.*` log record emitted
while the request is handled, so a posted batch or a flagged order can be
traced back to the webhook call that caused it.
"""

import time
import uuid
import logging
from contextvars import ContextVar
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ledger_backend.app.core.config import settings

logger = logging.getLogger("ledger.http")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s"
CORRELATION_HEADER = "X-Correlation-ID"

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = correlation_id_var.get()
        return True


def configure_logging(level: str = None) -> None:
    """Configure the `ledger` logger hierarchy once at startup."""
    root = logging.getLogger("ledger")
    root.setLevel((level or settings.log_level).upper())
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.addFilter(CorrelationIdFilter())
        root.addHandler(handler)


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        token = correlation_id_var.set(correlation_id)
        try:
            start = time.perf_counter()
            response = await call_next(request)
            duration_ms = round((time.perf_counter() - start) * 1000, 2)

            response.headers[CORRELATION_HEADER] = correlation_id
            response.headers["X-Process-Time"] = str(duration_ms)

            log_data = {
                "correlation_id": correlation_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            }

            if response.status_code >= 500:
                logger.error("Request failed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request rejected", extra=log_data)
            else:
                logger.info("Request handled", extra=log_data)

            return response
        finally:
            correlation_id_var.reset(token)
