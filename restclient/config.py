"""Client options: a single validated, immutable configuration object.

Options come from keyword arguments first, then ``REST_API_*`` environment
variables (or a ``.env`` file), then the ``DEFAULTS`` table.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings

from restclient.exceptions import ConfigurationError

# Applied once, before validation. Empty strings and None fall back here.
DEFAULTS: dict[str, Any] = {
    "id_attribute": "id",
    "create_method": "POST",
    "read_method": "GET",
    "update_method": "PUT",
    "destroy_method": "DELETE",
    "rate_limit": 1.0,
    "timeout": 0,
}

_REDACTED = "********"


class JwtOptions(BaseModel):
    """HMAC-signed JWT settings."""

    secret: str = ""
    algorithm: str = "HS256"
    claims: Any = Field(default_factory=dict)
    validity_duration_minutes: int = 0

    model_config = {"frozen": True}

    @field_validator("claims", mode="before")
    @classmethod
    def decode_claims(cls, value: Any) -> Any:
        if isinstance(value, (str, bytes)):
            try:
                return json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError(f"JWT claims are not valid JSON: {exc}") from exc
        return value


class OAuthOptions(BaseModel):
    """OAuth2 client-credentials grant settings."""

    client_id: str = ""
    client_secret: str = ""
    token_url: str = ""
    scopes: list[str] = Field(default_factory=list)
    endpoint_params: dict[str, str | list[str]] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def require_credentials(self) -> OAuthOptions:
        missing = [
            name
            for name in ("client_id", "client_secret", "token_url")
            if not getattr(self, name)
        ]
        if missing:
            raise ValueError(f"oauth requires {', '.join(missing)}")
        return self


class ClientOptions(BaseSettings):
    uri: str = ""
    insecure: bool = False
    username: str = ""
    password: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    use_cookies: bool = False
    timeout: float = Field(default=DEFAULTS["timeout"], ge=0)
    id_attribute: str = DEFAULTS["id_attribute"]
    create_method: str = DEFAULTS["create_method"]
    read_method: str = DEFAULTS["read_method"]
    update_method: str = DEFAULTS["update_method"]
    destroy_method: str = DEFAULTS["destroy_method"]
    read_data: str = ""
    update_data: str = ""
    destroy_data: str = ""
    copy_keys: list[str] = Field(default_factory=list)
    write_returns_object: bool = False
    create_returns_object: bool = False
    xssi_prefix: str = ""
    rate_limit: float = Field(default=DEFAULTS["rate_limit"], gt=0)
    oauth: OAuthOptions | None = None
    cert_file: str = ""
    key_file: str = ""
    cert_string: str = ""
    key_string: str = ""
    root_ca_file: str = ""
    root_ca_string: str = ""
    jwt: JwtOptions | None = None
    jwt_secret: str = ""
    test_path: str = ""
    debug: bool = False

    model_config = {
        "env_prefix": "REST_API_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "frozen": True,
    }

    @model_validator(mode="before")
    @classmethod
    def apply_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for key, default in DEFAULTS.items():
            value = data.get(key)
            if value is None or (isinstance(value, str) and not value.strip()):
                data[key] = default
        return data

    @field_validator("uri")
    @classmethod
    def normalize_uri(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("uri must be set to construct an API client")
        if not value.lower().startswith(("http://", "https://")):
            raise ValueError(f"uri must use the http:// or https:// scheme: {value!r}")
        # Callers append root-prefixed paths verbatim
        return value.rstrip("/")

    @field_validator("create_method", "read_method", "update_method", "destroy_method")
    @classmethod
    def strip_method(cls, value: str) -> str:
        return value.strip()

    @field_validator("headers")
    @classmethod
    def unique_headers(cls, value: dict[str, str]) -> dict[str, str]:
        seen: set[str] = set()
        for name in value:
            folded = name.lower()
            if folded in seen:
                raise ValueError(f"duplicate header name: {name!r}")
            seen.add(folded)
        return value

    @model_validator(mode="after")
    def check_pairs(self) -> ClientOptions:
        if bool(self.cert_file) != bool(self.key_file):
            raise ValueError("cert_file and key_file must be set together")
        if bool(self.cert_string) != bool(self.key_string):
            raise ValueError("cert_string and key_string must be set together")
        if self.jwt is not None and not self.effective_jwt_secret:
            raise ValueError(
                "the JWT secret is mandatory when jwt is defined "
                "(set jwt.secret or REST_API_JWT_SECRET)"
            )
        return self

    @property
    def effective_jwt_secret(self) -> str:
        if self.jwt is not None and self.jwt.secret:
            return self.jwt.secret
        return self.jwt_secret

    @property
    def basic_auth_enabled(self) -> bool:
        return bool(self.username) and bool(self.password)

    def describe(self) -> str:
        """Render the effective configuration for debug logs, secrets redacted."""
        lines = [
            f"uri: {self.uri}",
            f"insecure: {self.insecure}",
            f"username: {self.username}",
            f"password: {_REDACTED if self.password else ''}",
            f"id_attribute: {self.id_attribute}",
            f"methods: {self.create_method}/{self.read_method}/"
            f"{self.update_method}/{self.destroy_method}",
            f"write_returns_object: {self.write_returns_object}",
            f"create_returns_object: {self.create_returns_object}",
            f"rate_limit: {self.rate_limit}",
            f"timeout: {self.timeout}",
        ]
        if self.jwt is not None:
            lines.append(f"jwt.algorithm: {self.jwt.algorithm}")
            lines.append(f"jwt.secret: {_REDACTED}")
        if self.oauth is not None:
            lines.append(f"oauth.client_id: {self.oauth.client_id}")
            lines.append(f"oauth.token_url: {self.oauth.token_url}")
        lines.append("headers:")
        for name in self.headers:
            lines.append(f"  {name}: {_REDACTED}")
        if self.copy_keys:
            lines.append(f"copy_keys: {', '.join(self.copy_keys)}")
        return "\n".join(lines)


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "options"
        parts.append(f"{loc}: {err.get('msg', 'invalid value')}")
    return "; ".join(parts)


def build_options(**raw: Any) -> ClientOptions:
    """Validate *raw* options, raising :class:`ConfigurationError` on failure."""
    try:
        return ClientOptions(**raw)
    except ValidationError as exc:
        raise ConfigurationError(_format_validation_error(exc)) from exc
