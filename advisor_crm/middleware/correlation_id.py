from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from advisor_crm.context import correlation_scope


CORRELATION_HEADER = "x-correlation-id"
MAX_CORRELATION_ID_LENGTH = 128
_ALLOWED_CHARS = re.compile(r"^[A-Za-z0-9._:\-]+$")


def resolve_correlation_id(raw: str | None) -> str:
    """Use the caller's id when it is a short printable token, otherwise mint one."""
    candidate = (raw or "").strip()
    if candidate and len(candidate) <= MAX_CORRELATION_ID_LENGTH and _ALLOWED_CHARS.match(candidate):
        return candidate
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request.headers.get(CORRELATION_HEADER))
        request.state.correlation_id = correlation_id

        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)

        with correlation_scope(correlation_id):
            response = await call_next(request)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
