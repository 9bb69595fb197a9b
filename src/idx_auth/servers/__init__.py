"""HTTP surface for email-verification links and transaction status.

Sub-modules
-----------
routes       – Starlette routes and the ``create_app`` factory
correlation  – per-request correlation id middleware
"""

from .correlation import CorrelationIdMiddleware  # noqa: F401
from .routes import build_idx_routes, create_app  # noqa: F401

__all__ = ["CorrelationIdMiddleware", "build_idx_routes", "create_app"]
