"""Exception hierarchy shared by the HTTP layer and the render pipeline."""

from __future__ import annotations


class SheetZipError(RuntimeError):
    """Base error carrying the HTTP status used when it reaches a client."""

    status_code = 500

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(SheetZipError):
    """Raised when request input is missing or malformed."""

    status_code = 400


class AuthError(SheetZipError):
    """Raised when the ``X-API-Key`` header does not match."""

    status_code = 401


class MethodError(SheetZipError):
    """Raised for HTTP methods the service does not serve."""

    status_code = 405


class UpstreamError(SheetZipError):
    """Raised when the transform backend fails or answers something unusable."""


class BackendConfigError(UpstreamError):
    """Raised when the transform backend answers an HTML page instead of JSON.

    Apps Script deployments do this when the web app is not executable by
    anonymous callers or when the deployment URL is wrong.
    """


class TransientUpstreamError(UpstreamError):
    """Raised for backend failures worth retrying (HTTP 5xx)."""


class RenderError(SheetZipError):
    """Raised when the headless browser cannot produce a screenshot."""


class InvalidStateError(SheetZipError):
    """Raised when the archive writer is used outside its state machine."""


__all__ = [
    "AuthError",
    "BackendConfigError",
    "InvalidStateError",
    "MethodError",
    "RenderError",
    "SheetZipError",
    "TransientUpstreamError",
    "UpstreamError",
    "ValidationError",
]
