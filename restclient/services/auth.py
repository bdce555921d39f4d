"""Authorization header producers.

One primary method is resolved at construction (``NoAuth``,
``JwtHashedToken`` or ``OAuth2ClientCredentials``). HTTP Basic, when both
username and password are set, is layered on top and always has the final
word. Static configured headers are applied before any of these, so the
effective precedence is headers → JWT → OAuth2 → Basic.
"""

from __future__ import annotations

import asyncio
import base64
import copy
import logging
import threading
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Sequence
from urllib.parse import parse_qsl, quote_plus

import httpx
import jwt

from restclient.config import ClientOptions
from restclient.exceptions import AuthenticationError

logger = logging.getLogger(__name__)

HMAC_ALGORITHMS: frozenset[str] = frozenset({"HS256", "HS384", "HS512"})


class AuthMethod:
    """Produces the ``Authorization`` header value for one request."""

    def authorization(self, client: httpx.Client) -> str | None:
        raise NotImplementedError

    async def authorization_async(self, client: httpx.AsyncClient) -> str | None:
        # Only token endpoints need I/O; everything else signs locally.
        return self.authorization(client)  # type: ignore[arg-type]


@dataclass(frozen=True)
class NoAuth(AuthMethod):
    def authorization(self, client: httpx.Client) -> str | None:
        return None


@dataclass(frozen=True)
class BasicAuth(AuthMethod):
    username: str
    password: str = field(repr=False)

    def authorization(self, client: httpx.Client) -> str | None:
        raw = f"{self.username}:{self.password}".encode("utf-8")
        return "Basic " + base64.b64encode(raw).decode("ascii")


def _sorted(value: Any) -> Any:
    """Recursively order mapping keys so signatures are byte-reproducible."""
    if isinstance(value, Mapping):
        return {k: _sorted(value[k]) for k in sorted(value)}
    if isinstance(value, list):
        return [_sorted(v) for v in value]
    return value


@dataclass(frozen=True)
class JwtHashedToken(AuthMethod):
    """HMAC-signed bearer token built from an immutable claims template."""

    secret: bytes = field(repr=False)
    algorithm: str = "HS256"
    claims: Any = field(default_factory=dict)
    validity_minutes: int = 0

    def __post_init__(self) -> None:
        if isinstance(self.claims, Mapping):
            object.__setattr__(
                self, "claims", MappingProxyType(copy.deepcopy(dict(self.claims)))
            )

    def claims_for(self, now: int | None = None) -> dict[str, Any]:
        """Return a fresh claims copy with nbf/iat/exp set when a validity applies."""
        if not isinstance(self.claims, Mapping):
            raise AuthenticationError(
                f"JWT claims must be a JSON object, got {type(self.claims).__name__}"
            )
        claims = copy.deepcopy(dict(self.claims))
        if self.validity_minutes > 0:
            epoch = int(time.time()) if now is None else now
            claims["nbf"] = epoch
            claims["iat"] = epoch
            claims["exp"] = epoch + self.validity_minutes * 60
        return claims

    def sign(self, now: int | None = None) -> str:
        if self.algorithm not in HMAC_ALGORITHMS:
            raise AuthenticationError(
                f"unsupported JWT algorithm {self.algorithm!r}; "
                f"expected one of {', '.join(sorted(HMAC_ALGORITHMS))}"
            )
        claims = _sorted(self.claims_for(now))
        try:
            return jwt.encode(claims, self.secret, algorithm=self.algorithm)
        except (jwt.PyJWTError, TypeError, ValueError) as exc:
            raise AuthenticationError(f"failed to sign JWT: {exc}") from exc

    def authorization(self, client: httpx.Client) -> str | None:
        return f"Bearer {self.sign()}"


class OAuth2ClientCredentials(AuthMethod):
    """OAuth2 client-credentials grant with a cached access token.

    Client credentials are first sent with HTTP Basic; if the token endpoint
    rejects that with a 4xx the request is retried once with the credentials
    in the form body, and whichever style worked is remembered.
    """

    # Refresh this many seconds before the server-declared expiry.
    EXPIRY_DELTA = 10.0

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        token_url: str,
        scopes: Sequence[str] = (),
        endpoint_params: Mapping[str, str | list[str]] | None = None,
    ) -> None:
        self.client_id = client_id
        self._client_secret = client_secret
        self.token_url = token_url
        self.scopes = tuple(scopes)
        self.endpoint_params = dict(endpoint_params or {})
        self._lock = threading.Lock()
        self._async_lock = asyncio.Lock()
        self._access_token: str | None = None
        self._expires_at: float | None = None
        self._credentials_in_body: bool | None = None

    def __repr__(self) -> str:
        return (
            f"OAuth2ClientCredentials(client_id={self.client_id!r}, "
            f"token_url={self.token_url!r}, scopes={self.scopes!r})"
        )

    # -- token cache ---------------------------------------------------------

    def _cached_token(self) -> str | None:
        if self._access_token is None:
            return None
        if self._expires_at is not None and time.monotonic() >= self._expires_at:
            return None
        return self._access_token

    def _store(self, payload: Mapping[str, Any]) -> str:
        token = payload.get("access_token")
        if not isinstance(token, str) or not token:
            raise AuthenticationError("token endpoint response has no access_token")
        expires_in = payload.get("expires_in")
        expires_at = None
        if expires_in not in (None, "", 0, "0"):
            try:
                expires_at = time.monotonic() + float(expires_in) - self.EXPIRY_DELTA
            except (TypeError, ValueError) as exc:
                raise AuthenticationError(f"invalid expires_in: {expires_in!r}") from exc
        self._access_token = token
        self._expires_at = expires_at
        return token

    # -- token request -------------------------------------------------------

    def _request_kwargs(self, credentials_in_body: bool) -> dict[str, Any]:
        data: dict[str, Any] = {"grant_type": "client_credentials"}
        if self.scopes:
            data["scope"] = " ".join(self.scopes)
        data.update(self.endpoint_params)
        kwargs: dict[str, Any] = {"data": data, "headers": {"Accept": "application/json"}}
        if credentials_in_body:
            data["client_id"] = self.client_id
            data["client_secret"] = self._client_secret
        else:
            kwargs["auth"] = (quote_plus(self.client_id), quote_plus(self._client_secret))
        return kwargs

    def _styles(self) -> list[bool]:
        if self._credentials_in_body is None:
            return [False, True]
        return [self._credentials_in_body]

    @staticmethod
    def _parse(response: httpx.Response) -> Mapping[str, Any]:
        content_type = response.headers.get("content-type", "")
        if "application/x-www-form-urlencoded" in content_type or "text/plain" in content_type:
            return dict(parse_qsl(response.text))
        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthenticationError(f"token endpoint returned invalid JSON: {exc}") from exc
        if not isinstance(payload, Mapping):
            raise AuthenticationError("token endpoint returned a non-object body")
        return payload

    def _handle(self, response: httpx.Response, style: bool, last: bool) -> str | None:
        if response.is_success:
            self._credentials_in_body = style
            return self._store(self._parse(response))
        if response.is_client_error and not last:
            return None
        raise AuthenticationError(
            f"token endpoint rejected the grant ({response.status_code}): {response.text}"
        )

    def authorization(self, client: httpx.Client) -> str | None:
        with self._lock:
            token = self._cached_token()
            if token is None:
                styles = self._styles()
                for i, style in enumerate(styles):
                    try:
                        response = client.post(self.token_url, **self._request_kwargs(style))
                    except httpx.HTTPError as exc:
                        raise AuthenticationError(
                            f"token endpoint unreachable: {exc}"
                        ) from exc
                    token = self._handle(response, style, last=i == len(styles) - 1)
                    if token is not None:
                        logger.debug("Fetched OAuth2 access token from %s", self.token_url)
                        break
        return f"Bearer {token}"

    async def authorization_async(self, client: httpx.AsyncClient) -> str | None:
        # Tasks queue here so an empty cache triggers a single token request
        async with self._async_lock:
            with self._lock:
                token = self._cached_token()
                styles = self._styles()
            if token is None:
                for i, style in enumerate(styles):
                    try:
                        response = await client.post(
                            self.token_url, **self._request_kwargs(style)
                        )
                    except httpx.HTTPError as exc:
                        raise AuthenticationError(f"token endpoint unreachable: {exc}") from exc
                    with self._lock:
                        token = self._handle(response, style, last=i == len(styles) - 1)
                    if token is not None:
                        logger.debug("Fetched OAuth2 access token from %s", self.token_url)
                        break
        return f"Bearer {token}"


class Authenticator:
    """Applies the primary auth method, then the Basic-auth layer."""

    def __init__(self, method: AuthMethod | None = None, basic: BasicAuth | None = None) -> None:
        self.method = method or NoAuth()
        self.basic = basic

    def __repr__(self) -> str:
        return f"Authenticator(method={self.method!r}, basic={self.basic is not None})"

    def apply(self, request: httpx.Request, client: httpx.Client) -> None:
        value = self.method.authorization(client)
        if value:
            request.headers["Authorization"] = value
        if self.basic is not None:
            request.headers["Authorization"] = self.basic.authorization(client)

    async def apply_async(self, request: httpx.Request, client: httpx.AsyncClient) -> None:
        value = await self.method.authorization_async(client)
        if value:
            request.headers["Authorization"] = value
        if self.basic is not None:
            request.headers["Authorization"] = self.basic.authorization(client)  # type: ignore[arg-type]


def resolve_authenticator(options: ClientOptions) -> Authenticator:
    """Pick the auth variant once, from validated options."""
    method: AuthMethod = NoAuth()
    if options.jwt is not None:
        method = JwtHashedToken(
            secret=options.effective_jwt_secret.encode("utf-8"),
            algorithm=options.jwt.algorithm,
            claims=options.jwt.claims,
            validity_minutes=options.jwt.validity_duration_minutes,
        )
    if options.oauth is not None:
        if options.jwt is not None:
            logger.warning("Both jwt and oauth are configured; the OAuth2 token is used")
        method = OAuth2ClientCredentials(
            client_id=options.oauth.client_id,
            client_secret=options.oauth.client_secret,
            token_url=options.oauth.token_url,
            scopes=options.oauth.scopes,
            endpoint_params=options.oauth.endpoint_params,
        )

    basic = None
    if options.basic_auth_enabled:
        basic = BasicAuth(options.username, options.password)
    return Authenticator(method, basic)
