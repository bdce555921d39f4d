"""Async and sync HTTP clients for arbitrary JSON resources."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import Any, Mapping

import httpx

from restclient.config import ClientOptions, build_options
from restclient.exceptions import APIError, RequestTimeoutError, TransportError
from restclient.logging_config import redact_headers
from restclient.services.auth import resolve_authenticator
from restclient.services.rate_limiter import TokenBucketRateLimiter
from restclient.services.request_context import request_scope
from restclient.services.tls import build_ssl_context

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResponseEnvelope:
    """One response, with the XSSI prefix already stripped from the body."""

    status_code: int
    body: str
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


def _coerce_options(options: ClientOptions | Mapping[str, Any]) -> ClientOptions:
    if isinstance(options, ClientOptions):
        return options
    return build_options(**dict(options))


def _rejecting_cookie_jar() -> CookieJar:
    """A jar whose policy refuses every cookie, for clients without persistence."""
    return CookieJar(policy=DefaultCookiePolicy(allowed_domains=[]))


def _transport_error(exc: httpx.HTTPError, method: str, uri: str) -> TransportError:
    if isinstance(exc, httpx.TimeoutException):
        return RequestTimeoutError(f"{method} {uri}: request timed out ({exc})")
    return TransportError(f"{method} {uri}: {exc}")


# ---------------------------------------------------------------------------
# Shared core
# ---------------------------------------------------------------------------


class _ClientCore:
    """Option handling, request preparation and response classification."""

    def __init__(self, options: ClientOptions | Mapping[str, Any]) -> None:
        self.options = _coerce_options(options)
        self.authenticator = resolve_authenticator(self.options)
        self.rate_limiter = TokenBucketRateLimiter(self.options.rate_limit)
        self._ssl_context = build_ssl_context(self.options)
        logger.debug("Constructed client:\n%s", self.options.describe())

    @property
    def uri(self) -> str:
        return self.options.uri

    def _client_kwargs(self, transport: Any) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "verify": self._ssl_context,
            "timeout": self.options.timeout or None,
            "follow_redirects": True,
        }
        if not self.options.use_cookies:
            kwargs["cookies"] = _rejecting_cookie_jar()
        if transport is not None:
            kwargs["transport"] = transport
        return kwargs

    def _prepare(
        self,
        client: httpx.Client | httpx.AsyncClient,
        method: str,
        path: str,
        body: str,
    ) -> httpx.Request:
        headers = httpx.Headers()
        if body:
            headers["Content-Type"] = "application/json"
        # Configured headers may override the content type
        for name, value in self.options.headers.items():
            headers[name] = value
        return client.build_request(
            method,
            self.options.uri + path,
            content=body.encode("utf-8") if body else None,
            headers=headers,
        )

    def _log_request(self, request: httpx.Request, body: str) -> None:
        logger.debug(
            "Sending %s %s",
            request.method,
            request.url,
            extra={
                "method": request.method,
                "uri": str(request.url),
                "headers": redact_headers(request.headers),
                "body_length": len(body),
            },
        )

    @staticmethod
    def _log_wait(started: float) -> None:
        waited = time.monotonic() - started
        if waited >= 0.001:
            logger.debug(
                "Waited %.3fs for a rate limiter token",
                waited,
                extra={"rate_limit_wait": round(waited, 3)},
            )

    def _deadline_error(self, request: httpx.Request) -> RequestTimeoutError:
        return RequestTimeoutError(
            f"{request.method} {request.url}: no complete response "
            f"within {self.options.timeout}s"
        )

    def _envelope(self, response: httpx.Response, content: bytes) -> ResponseEnvelope:
        body = content.decode(response.encoding or "utf-8", errors="replace")
        prefix = self.options.xssi_prefix
        if prefix and body.startswith(prefix):
            body = body[len(prefix):]
        logger.debug(
            "Response %d from %s",
            response.status_code,
            response.request.url,
            extra={"status_code": response.status_code, "body_length": len(body)},
        )
        return ResponseEnvelope(
            status_code=response.status_code,
            body=body,
            headers=dict(response.headers),
        )

    @staticmethod
    def _classify(envelope: ResponseEnvelope) -> str:
        if not envelope.ok:
            raise APIError(envelope.status_code, envelope.body, envelope.headers)
        # Downstream JSON decoding must never fail on an empty success
        if envelope.body == "":
            return "{}"
        return envelope.body


# ---------------------------------------------------------------------------
# Sync client
# ---------------------------------------------------------------------------


class RestApiClient(_ClientCore):
    """Synchronous client (backed by ``httpx.Client``)."""

    def __init__(
        self,
        options: ClientOptions | Mapping[str, Any],
        *,
        _transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(options)
        self._client = httpx.Client(**self._client_kwargs(_transport))

    # -- context manager -----------------------------------------------------

    def __enter__(self) -> RestApiClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _dispatch(self, request: httpx.Request) -> tuple[httpx.Response, bytes]:
        # One deadline covers connect, redirects, headers and the whole body
        timeout = self.options.timeout
        deadline = time.monotonic() + timeout if timeout else None
        response = self._client.send(request, stream=True)
        try:
            chunks: list[bytes] = []
            for chunk in response.iter_bytes():
                chunks.append(chunk)
                if deadline is not None and time.monotonic() > deadline:
                    raise self._deadline_error(request)
            if deadline is not None and time.monotonic() > deadline:
                raise self._deadline_error(request)
        finally:
            response.close()
        return response, b"".join(chunks)

    # -- public methods ------------------------------------------------------

    def send(
        self,
        method: str,
        path: str,
        body: str = "",
        *,
        wait_timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> ResponseEnvelope:
        """Dispatch one request and return the response whatever its status."""
        with request_scope():
            request = self._prepare(self._client, method, path, body)
            self.authenticator.apply(request, self._client)
            self._log_request(request, body)
            started = time.monotonic()
            self.rate_limiter.acquire(timeout=wait_timeout, cancel=cancel)
            self._log_wait(started)
            try:
                response, content = self._dispatch(request)
            except httpx.HTTPError as exc:
                raise _transport_error(exc, method, str(request.url)) from exc
            return self._envelope(response, content)

    def send_request(
        self,
        method: str,
        path: str,
        body: str = "",
        *,
        wait_timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> str:
        """Send *body* to ``uri + path`` and return the response body.

        Raises :class:`APIError` (carrying the body) on non-2xx statuses.
        """
        envelope = self.send(method, path, body, wait_timeout=wait_timeout, cancel=cancel)
        return self._classify(envelope)

    def check_connection(self) -> None:
        """Issue the read method against ``test_path``, raising on failure."""
        if self.options.test_path:
            self.send_request(self.options.read_method, self.options.test_path)


# ---------------------------------------------------------------------------
# Async client
# ---------------------------------------------------------------------------


class AsyncRestApiClient(_ClientCore):
    """Async client (backed by ``httpx.AsyncClient``)."""

    def __init__(
        self,
        options: ClientOptions | Mapping[str, Any],
        *,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(options)
        self._client = httpx.AsyncClient(**self._client_kwargs(_transport))

    # -- context manager -----------------------------------------------------

    async def __aenter__(self) -> AsyncRestApiClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _read_response(self, request: httpx.Request) -> tuple[httpx.Response, bytes]:
        response = await self._client.send(request, stream=True)
        try:
            content = await response.aread()
        finally:
            await response.aclose()
        return response, content

    async def _dispatch(self, request: httpx.Request) -> tuple[httpx.Response, bytes]:
        if not self.options.timeout:
            return await self._read_response(request)
        try:
            return await asyncio.wait_for(self._read_response(request), self.options.timeout)
        except asyncio.TimeoutError as exc:
            raise self._deadline_error(request) from exc

    # -- public methods ------------------------------------------------------

    async def send(
        self,
        method: str,
        path: str,
        body: str = "",
        *,
        wait_timeout: float | None = None,
    ) -> ResponseEnvelope:
        with request_scope():
            request = self._prepare(self._client, method, path, body)
            await self.authenticator.apply_async(request, self._client)
            self._log_request(request, body)
            started = time.monotonic()
            await self.rate_limiter.acquire_async(timeout=wait_timeout)
            self._log_wait(started)
            try:
                response, content = await self._dispatch(request)
            except httpx.HTTPError as exc:
                raise _transport_error(exc, method, str(request.url)) from exc
            return self._envelope(response, content)

    async def send_request(
        self,
        method: str,
        path: str,
        body: str = "",
        *,
        wait_timeout: float | None = None,
    ) -> str:
        envelope = await self.send(method, path, body, wait_timeout=wait_timeout)
        return self._classify(envelope)

    async def check_connection(self) -> None:
        if self.options.test_path:
            await self.send_request(self.options.read_method, self.options.test_path)
