"""Exception hierarchy shared by every function handler.

Each error carries the HTTP status the serving layer should answer with,
so handlers raise and the FastAPI exception handler renders
``{"error": message}``.
"""

from __future__ import annotations


class FunctionError(Exception):
    """Base class for errors surfaced to HTTP callers."""

    status_code: int = 500

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class InvalidRequestError(FunctionError):
    """Malformed or incomplete request input."""

    status_code = 400


class UnauthorizedError(FunctionError):
    status_code = 401


class ForbiddenError(FunctionError):
    status_code = 403


class NotFoundError(FunctionError):
    status_code = 404


class UpstreamError(FunctionError):
    """A dependency (third-party API, remote site) failed."""

    status_code = 500


class FetchError(UpstreamError):
    """A remote document could not be retrieved (transport error or non-2xx)."""


class UnsupportedContentError(UpstreamError):
    """The remote document's content type cannot be ingested."""


class RowStoreError(UpstreamError):
    """The row store rejected a request."""
