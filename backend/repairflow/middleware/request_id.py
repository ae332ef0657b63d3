# backend/repairflow/middleware/request_id.py
from __future__ import annotations

import uuid
from contextvars import ContextVar
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)

_INBOUND_HEADERS = ("X-Request-ID", "X-Request-Id", "X-Correlation-ID")


def get_request_id() -> str | None:
    return request_id_ctx.get()


def bind_request_id(rid: str | None):
    """
    Bind an id outside of HTTP (scheduler ticks, celery tasks) so their log
    lines correlate the same way request logs do. Returns the reset token.
    """
    return request_id_ctx.set(rid or str(uuid.uuid4()))


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Per-request id, echoed back in X-Request-ID.

    Stored both in the ContextVar (for the JSON log formatter) and on
    request.state (for StructuredLoggingMiddleware, which runs outside it).
    """

    header_out = "X-Request-ID"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        rid = None
        for h in _INBOUND_HEADERS:
            rid = request.headers.get(h)
            if rid:
                break
        rid = rid or str(uuid.uuid4())

        request.state.request_id = rid
        token = request_id_ctx.set(rid)
        try:
            resp = await call_next(request)
            resp.headers[self.header_out] = rid
            return resp
        finally:
            request_id_ctx.reset(token)
