"""Request timing and tracing middleware for the plan takeoff API."""
import time
import uuid
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from bidplan.services.perf_monitor import tracker

logger = logging.getLogger("bidplan-api.middleware")

SKIP_LOG_PATHS = {"/health", "/metrics"}


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """
    Stamps every response with X-Request-ID and X-Process-Time, feeds the
    request duration into the perf tracker, and logs one structured line per
    request (health and metrics probes excluded).

    An incoming X-Request-ID header is reused so client retries can be traced.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.perf_counter()

        request.state.request_id = request_id

        response: Response = await call_next(request)

        duration_ms = round((time.perf_counter() - start_time) * 1000, 2)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(duration_ms)

        if request.url.path not in SKIP_LOG_PATHS:
            # Route template, not the concrete URL, so plan ids don't each get a bucket
            route = request.scope.get("route")
            path = getattr(route, "path", request.url.path)
            tracker.record_operation(f"{request.method} {path}", duration_ms, failed=response.status_code >= 500)
            logger.info(
                "request completed",
                extra={
                    "http_method": request.method,
                    "http_path": request.url.path,
                    "http_status": response.status_code,
                    "request_id": request_id,
                    "duration_ms": duration_ms,
                },
            )

        return response
