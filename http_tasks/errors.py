"""Errors raised by the HTTP task engine.

Everything derives from HttpTaskError so hosts can catch one type. Caller
cancellation is not part of this hierarchy: it surfaces as
asyncio.CancelledError.
"""

from __future__ import annotations


class HttpTaskError(Exception):
    """Base class for task errors."""


class ConfigurationError(HttpTaskError):
    """Raised when the input or options are invalid. Detected before any network I/O."""


class EmptyUrlError(ConfigurationError):
    """Raised when a request is attempted without a URL."""

    def __init__(self) -> None:
        super().__init__("Url can not be empty.")


class InvalidUsernameFormat(ConfigurationError):
    """Raised when Windows authentication is used without a 'domain\\username' username."""

    def __init__(self, username: str | None) -> None:
        super().__init__(f"Username needs to be 'domain\\username' now it was '{username}'")
        self.username = username


class CertificateLoadError(ConfigurationError):
    """Raised when certificate material cannot be decoded or used."""


class DestinationExistsError(ConfigurationError):
    """Raised when a download target exists and overwriting was not requested."""

    def __init__(self, path: str) -> None:
        super().__init__(f"File '{path}' already exists and overwrite is not enabled.")
        self.path = path


class CertificateNotFound(HttpTaskError):
    """Raised when a client certificate cannot be located."""

    def __init__(self, message: str, locator: str) -> None:
        super().__init__(message)
        self.locator = locator


class RequestTimeout(HttpTaskError):
    """Raised when the transport gives up on a request, most likely due to a timeout."""


class TransportError(HttpTaskError):
    """Raised when the request fails below HTTP (connection refused, TLS failure, etc.)."""


class ResponseParseError(HttpTaskError):
    """Raised when a response body cannot be parsed as JSON."""

    def __init__(self, raw: str) -> None:
        super().__init__(f"Unable to read response message as json: {raw}")
        self.raw = raw


class HttpErrorResponse(HttpTaskError):
    """Raised for non-success responses when throw_exception_on_error_response is set."""

    def __init__(self, url: str, status_code: int, body: str | None = None) -> None:
        message = f"Request to '{url}' failed with status code {status_code}."
        if body is not None:
            message += f" Response body: {body}"
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.body = body
