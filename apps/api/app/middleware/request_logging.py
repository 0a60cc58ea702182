from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


def _observe(request: Request, status_code: int, started: float) -> dict[str, Any]:
    duration_ms = round((time.perf_counter() - started) * 1000, 2)
    path = resolve_http_path_label(request)
    observe_http_request(method=request.method, path=path, status=status_code, duration=duration_ms / 1000)
    context = getattr(request.state, "context", None)
    return {
        "method": request.method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
        "organization_id": getattr(context, "organization_id", None),
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs and counts every request under its route template.

    The router stores the matched route in the scope during dispatch, so the
    label is read after ``call_next``.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error("http.error", exc_info=True, extra=_observe(request, 500, started))
            raise

        logger.info("http.request", extra=_observe(request, response.status_code, started))
        return response
