"""Browser-facing endpoints for interaction-code transactions.

Handlers are thin:

1. Parse and validate HTTP-layer parameters.
2. Delegate to :class:`~idx_auth.idx.client.IdxClient`.
3. Return an appropriate Starlette ``Response`` type.

The base path is configurable (default: ``/idx``) so that reverse-proxies can
mount the routes under arbitrary prefixes.

SECURITY NOTE
-------------
Neither the OTP nor any token is logged.  Transaction results are rendered
through :meth:`IdxTransaction.as_dict`, which reports tokens by kind only.
"""

from __future__ import annotations

import html
import logging
from typing import TYPE_CHECKING

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, Response
from starlette.routing import Route

from idx_auth.email_verify import is_email_verify_callback, parse_email_verify_callback
from idx_auth.errors import AuthSdkError
from idx_auth.log_utils import mask_sensitive
from idx_auth.servers.correlation import CorrelationIdMiddleware

if TYPE_CHECKING:  # pragma: no cover
    from idx_auth.idx.client import IdxClient

_LOG = logging.getLogger("idx-auth.routes")


def _html_page(title: str, body: str, status: int = 200) -> HTMLResponse:
    """Return a tiny informational / error HTML page."""
    content = (
        "<!doctype html><html lang='en'>"
        "<head><meta charset='utf-8'><title>"
        f"{title}</title></head><body><h1>{title}</h1>"
        f"<p>{html.escape(body)}</p></body></html>"
    )
    return HTMLResponse(content, status_code=status)


# --------------------------------------------------------------------------- #
# Public API                                                                  #
# --------------------------------------------------------------------------- #
def build_idx_routes(client: IdxClient, *, base_path: str = "/idx") -> list[Route]:
    """Return the routes serving *client* under *base_path*."""

    # ----- GET /idx/email-verify ----------------------------------------- #
    async def _email_verify(request: Request) -> Response:  # noqa: D401
        query = request.url.query
        if not is_email_verify_callback(query):
            return _html_page("Missing parameters", "state or otp missing", 400)

        state = parse_email_verify_callback(query)["state"]
        resumable = client.can_proceed(state=state)
        try:
            txn = await client.handle_email_verify_callback(query)
        except AuthSdkError as exc:
            _LOG.warning("Email verification error: %s", exc)
            return _html_page("Verification failed", str(exc), 400)

        _LOG.info(
            "Email verification state=%s resumed=%s status=%s correlation_id=%s",
            mask_sensitive(state),
            resumable,
            txn.status.value,
            getattr(request.state, "correlation_id", "-"),
        )
        if not resumable:
            return _html_page("Verify your email", str(txn.error))
        return JSONResponse(txn.as_dict())

    # ----- GET /idx/status ----------------------------------------------- #
    async def _status(request: Request) -> Response:  # noqa: D401
        state = request.query_params.get("state") or None
        return JSONResponse({"can_proceed": client.can_proceed(state=state)})

    return [
        Route(f"{base_path}/email-verify", _email_verify, methods=["GET"]),
        Route(f"{base_path}/status", _status, methods=["GET"]),
    ]


def create_app(client: IdxClient, *, base_path: str = "/idx") -> Starlette:
    """Standalone Starlette application exposing :func:`build_idx_routes`."""
    return Starlette(
        routes=build_idx_routes(client, base_path=base_path),
        middleware=[Middleware(CorrelationIdMiddleware)],
    )
