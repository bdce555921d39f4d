from __future__ import annotations

import os
from typing import Any, Callable

import httpx
import pytest

from restclient.client import AsyncRestApiClient, RestApiClient

BASE_URI = "https://api.example.com"

Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch, tmp_path):
    """Keep REST_API_* variables and stray .env files out of every test."""
    for name in list(os.environ):
        if name.startswith("REST_API_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    yield


def options(**overrides: Any) -> dict[str, Any]:
    # A high rate keeps tests that are not about rate limiting fast.
    opts: dict[str, Any] = {"uri": BASE_URI, "rate_limit": 1000}
    opts.update(overrides)
    return opts


def make_client(handler: Handler, **overrides: Any) -> RestApiClient:
    return RestApiClient(options(**overrides), _transport=httpx.MockTransport(handler))


def make_async_client(handler: Handler, **overrides: Any) -> AsyncRestApiClient:
    return AsyncRestApiClient(options(**overrides), _transport=httpx.MockTransport(handler))
