"""Generic client for JSON resources on arbitrary REST APIs."""

from __future__ import annotations

from restclient.client import AsyncRestApiClient, ResponseEnvelope, RestApiClient
from restclient.config import ClientOptions, JwtOptions, OAuthOptions, build_options
from restclient.exceptions import (
    APIError,
    AuthenticationError,
    ConfigurationError,
    DecodingError,
    InvalidImportIdError,
    RequestCancelledError,
    RequestTimeoutError,
    RestClientError,
    TransportError,
)
from restclient.objects import ObjectState, RestObject
from restclient.services.payload import get_field

__all__ = [
    "AsyncRestApiClient",
    "RestApiClient",
    "ResponseEnvelope",
    "ClientOptions",
    "JwtOptions",
    "OAuthOptions",
    "build_options",
    "RestClientError",
    "ConfigurationError",
    "AuthenticationError",
    "TransportError",
    "RequestTimeoutError",
    "RequestCancelledError",
    "APIError",
    "DecodingError",
    "InvalidImportIdError",
    "ObjectState",
    "RestObject",
    "get_field",
]
