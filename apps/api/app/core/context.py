from __future__ import annotations

import uuid
from contextvars import ContextVar, Token
from dataclasses import dataclass

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


CORRELATION_HEADER = "x-correlation-id"


@dataclass
class RequestContext:
    correlation_id: str
    user_id: str | None = None
    organization_id: str | None = None


correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
request_context_var: ContextVar[RequestContext | None] = ContextVar("request_context", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def get_request_context() -> RequestContext | None:
    return request_context_var.get()


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds a correlation id and a ``RequestContext`` for the duration of a request.

    The id is taken from ``X-Correlation-Id`` or generated, tagged on the current
    server span and echoed back as ``x-correlation-id`` and ``x-request-id``.
    Authentication fills in the user and organization on the same context object.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        context = RequestContext(correlation_id=correlation_id)
        request.state.correlation_id = correlation_id
        request.state.context = context

        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)

        correlation_token = set_correlation_id(correlation_id)
        context_token = request_context_var.set(context)
        try:
            response = await call_next(request)
        finally:
            request_context_var.reset(context_token)
            reset_correlation_id(correlation_token)

        response.headers[CORRELATION_HEADER] = correlation_id
        response.headers["x-request-id"] = correlation_id
        return response
