"""Error taxonomy for the Google sync engine."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import httpx


class SyncError(Exception):
    """Base class for every failure raised by the sync engine."""


class MissingCredential(SyncError):
    """Raised before any network call when a credential is absent or invalid."""

    def __init__(self, message: str = "Mailbox missing authentication information") -> None:
        super().__init__(message)


class UpstreamUnreachable(SyncError):
    """Transport-level failure (DNS, TLS, connection reset, timeout)."""


class UpstreamRejected(SyncError):
    """The provider answered with a non-success HTTP status.

    ``message`` is the provider's own error text when the body carries one,
    otherwise the raw response text.
    """

    def __init__(
        self,
        status: int,
        message: str = "",
        body: str = "",
        response: httpx.Response | None = None,
    ) -> None:
        super().__init__(f"Invalid HTTP status code {status}: {message}" if message
                         else f"Invalid HTTP status code {status}")
        self.status = status
        self.message = message
        self.body = body
        self.response = response


class MalformedFeed(SyncError):
    """The Atom feed could not be fetched or lacks a required feed-level field."""


# ── Response body helpers ──────────────────────────────────────────────────────


def response_error_message(response: httpx.Response) -> str:
    """Provider error text from a response body, else the raw body text.

    Understands the Gmail API shape ``{"error": {"message": ...}}`` and the
    OAuth token endpoint shape ``{"error": ..., "error_description": ...}``.
    """
    try:
        data = response.json()
    except ValueError:
        return response.text
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return str(data.get("error_description") or error)
    return response.text


def json_object(response: httpx.Response) -> dict[str, Any]:
    """Decode a success body that must be a JSON object.

    Anything else (an HTML login page from a proxy, a bare array) is raised
    as UpstreamRejected so it stays inside the error taxonomy.
    """
    try:
        data = response.json()
    except ValueError:
        data = None
    if not isinstance(data, dict):
        raise UpstreamRejected(
            response.status_code,
            message="Invalid JSON body",
            body=response.text,
            response=response,
        )
    return data
