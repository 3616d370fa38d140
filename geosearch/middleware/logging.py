import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars

log = structlog.get_logger()

REQUEST_ID_HEADER = "X-Request-ID"
RESPONSE_TIME_HEADER = "X-Response-Time-Ms"

# Polled by load balancers; logged at debug only
QUIET_PATHS = ("/health",)


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    One log line per request, tagged with a request id that the orchestrator's
    search events inherit through structlog's context variables.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        clear_contextvars()

        # An upstream id wins so a search can be traced across services
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        bind_contextvars(
            request_id=request_id,
            http_method=request.method,
            path=request.url.path,
        )
        request.state.request_id = request_id

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            log.exception("http_request_failed", elapsed_ms=_elapsed_ms(started))
            raise

        elapsed_ms = _elapsed_ms(started)
        route = request.scope.get("route")
        emit = log.debug if request.url.path in QUIET_PATHS else log.info
        emit(
            "http_request",
            route=getattr(route, "path", None),
            status_code=response.status_code,
            elapsed_ms=elapsed_ms,
        )

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers[RESPONSE_TIME_HEADER] = str(elapsed_ms)
        return response


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)
