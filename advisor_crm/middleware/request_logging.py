from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from advisor_crm.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("advisor_crm.request")

# probes are counted in metrics but not logged
QUIET_PATHS = frozenset({"/health", "/metrics"})


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = _elapsed_ms(started)
            path = resolve_http_path_label(request)
            observe_http_request(method=request.method, path=path, status=500, duration=duration_ms / 1000)
            logger.exception(
                "http.error",
                extra={"method": request.method, "path": path, "status_code": 500, "duration_ms": duration_ms},
            )
            raise

        duration_ms = _elapsed_ms(started)
        path = resolve_http_path_label(request)
        observe_http_request(method=request.method, path=path, status=response.status_code, duration=duration_ms / 1000)
        if path not in QUIET_PATHS:
            logger.log(
                logging.WARNING if response.status_code >= 500 else logging.INFO,
                "http.request",
                extra={
                    "method": request.method,
                    "path": path,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                },
            )
        return response
