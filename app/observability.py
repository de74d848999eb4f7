import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import REQUEST_COUNT, REQUEST_ERRORS, REQUEST_LATENCY

logger = logging.getLogger(__name__)


def _request_path(request: Request) -> str:
    route = request.scope.get("route")
    if route and hasattr(route, "path"):
        return route.path
    return request.url.path


def _record(request: Request, status_code: int, duration_ms: float) -> str:
    path = _request_path(request)
    REQUEST_COUNT.labels(request.method, path, str(status_code)).inc()
    REQUEST_LATENCY.labels(request.method, path, str(status_code)).observe(
        duration_ms / 1000.0
    )
    if status_code >= 500:
        REQUEST_ERRORS.labels(request.method, path, str(status_code)).inc()
    return path


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Tags each request with an ``x-request-id`` and records its metrics."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            _log_request(request, request_id, 500, start, failed=True)
            raise
        _log_request(request, request_id, response.status_code, start)
        response.headers["x-request-id"] = request_id
        return response


def _log_request(
    request: Request,
    request_id: str,
    status_code: int,
    start: float,
    failed: bool = False,
) -> None:
    duration_ms = (time.monotonic() - start) * 1000.0
    extra = {
        "request_id": request_id,
        "path": _record(request, status_code, duration_ms),
        "method": request.method,
        "status": status_code,
        "duration_ms": round(duration_ms, 2),
    }
    if failed:
        logger.exception("request_failed", extra=extra)
    else:
        logger.info("request_completed", extra=extra)
