"""Exception types raised by the interaction and token engines.

Only lightweight, **data-carrying** exceptions live here so that web/CLI layers
can transform them into HTTP responses or user-friendly messages.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover
    from idx_auth.idx.types import IdxResponse


class AuthSdkError(RuntimeError):
    """Raised when the library is used incorrectly or a policy check fails."""

    def __init__(self, message: str, *, token_key: str | None = None) -> None:
        super().__init__(message)
        self.token_key: str | None = token_key

    def to_payload(self) -> dict[str, Any]:
        """Return a JSON-serialisable payload **without secrets**."""
        payload: dict[str, Any] = {"error": "auth_sdk_error", "message": str(self)}
        if self.token_key:
            payload["token_key"] = self.token_key
        return payload


class OAuthError(RuntimeError):
    """Raised when the authorization server rejects a grant."""

    def __init__(
        self,
        error_code: str,
        summary: str | None = None,
        *,
        token_key: str | None = None,
    ) -> None:
        super().__init__(summary or error_code)
        self.error_code: str = error_code
        self.summary: str = summary or error_code
        self.token_key: str | None = token_key

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": self.error_code,
            "error_description": self.summary,
        }
        if self.token_key:
            payload["token_key"] = self.token_key
        return payload


class AuthApiError(RuntimeError):
    """Raised for transport failures that are not OAuth or IDX errors."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code: int | None = status_code

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": "auth_api_error",
            "status_code": self.status_code,
            "message": str(self),
        }


class IdxResponseError(RuntimeError):
    """Raised when the provider answers a step with an error IDX payload.

    The parsed response is kept so the resolver can surface its messages or
    detect a terminal state instead of failing the whole transaction.
    """

    def __init__(self, idx_response: IdxResponse, message: str | None = None) -> None:
        texts = [m.message for m in idx_response.messages]
        super().__init__(message or "; ".join(texts) or "IDX request failed")
        self.idx_response = idx_response

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": "idx_error",
            "messages": [m.message for m in self.idx_response.messages],
        }
