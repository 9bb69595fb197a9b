"""Correlation ID middleware for request tracing.

Generates a unique correlation ID per incoming HTTP request (or reuses the one
the caller sent), sets it in ``request.state.correlation_id`` for handlers and
echoes it back in the response headers.

The correlation ID is a random UUID4 hex string and carries no secrets.
"""

from __future__ import annotations

import logging
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from idx_auth.log_utils import get_auth_logger

_HEADER_NAME = "X-Correlation-ID"
_logger = logging.getLogger("idx-auth.correlation")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that attaches a per-request correlation ID."""

    def __init__(self, app, header_name: str = _HEADER_NAME) -> None:  # type: ignore[override]  # noqa: ANN001
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]  # noqa: ANN001
        correlation_id = request.headers.get(self.header_name) or uuid.uuid4().hex
        request.state.correlation_id = correlation_id
        log = get_auth_logger(
            base_logger_name=_logger.name, correlation_id=correlation_id
        )
        log.debug("%s %s", request.method, request.url.path)
        response = await call_next(request)
        response.headers[self.header_name] = correlation_id
        return response
