"""Exception hierarchy for the REST object client."""

from __future__ import annotations

from typing import Mapping


class RestClientError(Exception):
    """Base exception for all client errors."""


class ConfigurationError(RestClientError):
    """Raised when client options are missing or malformed."""


class AuthenticationError(RestClientError):
    """Raised when an Authorization header cannot be produced."""


class TransportError(RestClientError):
    """Raised on DNS, connect, TLS or redirect failures."""


class RequestTimeoutError(TransportError):
    """Raised when a request exceeds the configured timeout."""


class RequestCancelledError(RestClientError):
    """Raised when a caller abandons the wait for a rate-limiter token."""


class APIError(RestClientError):
    """Raised on responses with a status outside ``[200, 300)``.

    The (XSSI-stripped) response body is kept on the exception so callers
    can inspect diagnostic payloads.
    """

    def __init__(
        self,
        status_code: int,
        body: str,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self.status_code = status_code
        self.body = body
        self.headers = dict(headers or {})
        super().__init__(f"unexpected response code '{status_code}': {body}")


class DecodingError(RestClientError):
    """Raised when a body is not valid JSON or a field cannot be read."""


class InvalidImportIdError(RestClientError, ValueError):
    """Raised when an import identifier is not ``"<path>,<identifier>"``."""
