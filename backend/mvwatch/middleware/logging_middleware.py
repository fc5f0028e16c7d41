"""
Request Logging Middleware

Logs status API requests with timing, tags every log line emitted while
serving a request with a correlation id, and records Prometheus request
metrics.
"""
import time
import uuid
import logging
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from mvwatch.core.logging_config import set_event_id, clear_event_id
from mvwatch.core.metrics import record_request_metrics

logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each HTTP request and exposes its id in the X-Request-ID header."""

    # Scraped and probed constantly; metrics only
    EXCLUDED_PATHS = {'/health', '/metrics', '/docs', '/redoc', '/openapi.json'}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = uuid.uuid4().hex[:12]
        token = set_event_id(f"req-{request_id}")
        request.state.request_id = request_id

        start_time = time.perf_counter()
        method = request.method
        path = request.url.path
        should_log = path not in self.EXCLUDED_PATHS
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception as e:
            logger.error(
                f"Request {method} {path} failed: {e}",
                extra={"event_type": "request_error", "method": method, "path": path, "error_type": type(e).__name__},
                exc_info=True
            )
            raise
        finally:
            elapsed = time.perf_counter() - start_time
            record_request_metrics(
                method=method,
                path=path,
                status_code=status_code,
                response_time_seconds=elapsed
            )
            if should_log:
                logger.log(
                    logging.INFO if status_code < 400 else logging.WARNING,
                    f"{method} {path} {status_code}",
                    extra={
                        "event_type": "request_complete",
                        "method": method,
                        "path": path,
                        "status_code": status_code,
                        "response_time_ms": round(elapsed * 1000, 2),
                    }
                )
            clear_event_id(token)
