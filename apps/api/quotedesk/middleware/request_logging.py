from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from quotedesk.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("quotedesk.request")


def _finish(request: Request, started: float, status_code: int) -> dict[str, object]:
    # the route template is only known after routing, so the label is resolved here
    duration = time.perf_counter() - started
    fields: dict[str, object] = {
        "method": request.method,
        "path": resolve_http_path_label(request),
        "status_code": status_code,
        "duration_ms": round(duration * 1000, 2),
    }
    observe_http_request(method=request.method, path=str(fields["path"]), status=status_code, duration=duration)
    return fields


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error("http.error", exc_info=True, extra=_finish(request, started, 500))
            raise
        logger.info("http.request", extra=_finish(request, started, response.status_code))
        return response
