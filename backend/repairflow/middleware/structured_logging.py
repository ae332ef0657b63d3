# backend/repairflow/middleware/structured_logging.py
from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..services.runtime_metrics import METRICS

log = logging.getLogger("repairflow.request")


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    One log line per HTTP command:
      request_id, org, actor, role, method, path, status_code, latency_ms

    Must be added before RequestIDMiddleware so it wraps it and can read
    request.state.request_id after the inner call returns.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        t0 = time.monotonic()

        # Headers are good enough for the access line; the principal is resolved
        # inside handlers.
        org_slug = request.headers.get("X-Org-Slug")
        actor_email = request.headers.get("X-User-Email")
        actor_role = request.headers.get("X-User-Role")

        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            latency_ms = int((time.monotonic() - t0) * 1000)
            request_id: Optional[str] = getattr(request.state, "request_id", None)

            METRICS.inc("http_requests_total")
            if status_code >= 500:
                METRICS.inc("http_requests_5xx")
            elif status_code == 409:
                METRICS.inc("http_requests_conflict")

            log.info(
                "http_request %s %s -> %s (%sms)",
                request.method,
                request.url.path,
                status_code,
                latency_ms,
                extra={
                    "event": "http_request",
                    "http_request_id": request_id,
                    "org_slug": org_slug,
                    "actor_email": actor_email,
                    "actor_role": actor_role,
                    "status_code": status_code,
                    "latency_ms": latency_ms,
                },
            )
