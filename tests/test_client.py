"""Tests for restclient.client — request execution, status handling, timeouts."""

from __future__ import annotations

import asyncio
import json
import logging
import socket
import threading
import time

import httpx
import pytest

from conftest import BASE_URI, make_async_client, make_client
from restclient.client import AsyncRestApiClient, RestApiClient
from restclient.exceptions import (
    APIError,
    RequestCancelledError,
    RequestTimeoutError,
    TransportError,
)
from restclient.services.request_context import get_request_id


_DRIP_BODY = b'{"data": "' + b"x" * 28 + b'"}'


def _drip_server(interval: float):
    """Loopback server that sends headers at once, then the body one byte at a time."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(4)
    listener.settimeout(0.2)
    stop = threading.Event()

    def serve_one(conn: socket.socket) -> None:
        with conn:
            try:
                request = b""
                while b"\r\n\r\n" not in request:
                    chunk = conn.recv(1024)
                    if not chunk:
                        return
                    request += chunk
                conn.sendall(
                    b"HTTP/1.1 200 OK\r\n"
                    b"Content-Type: application/json\r\n"
                    b"Content-Length: %d\r\n"
                    b"Connection: close\r\n\r\n" % len(_DRIP_BODY)
                )
                for i in range(len(_DRIP_BODY)):
                    if stop.is_set():
                        return
                    conn.sendall(_DRIP_BODY[i:i + 1])
                    time.sleep(interval)
            except OSError:
                return

    def accept_loop() -> None:
        while not stop.is_set():
            try:
                conn, _ = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            threading.Thread(target=serve_one, args=(conn,), daemon=True).start()

    threading.Thread(target=accept_loop, daemon=True).start()
    return listener, stop


@pytest.fixture()
def drip_server(monkeypatch):
    monkeypatch.setenv("NO_PROXY", "*")
    servers = []

    def start(interval: float) -> str:
        listener, stop = _drip_server(interval)
        servers.append((listener, stop))
        return f"http://127.0.0.1:{listener.getsockname()[1]}"

    yield start
    for listener, stop in servers:
        stop.set()
        listener.close()


def _echo(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "method": request.method,
            "url": str(request.url),
            "content_type": request.headers.get("content-type"),
            "body": request.content.decode(),
        },
    )


# ---------------------------------------------------------------------------
# Request construction
# ---------------------------------------------------------------------------


class TestRequestConstruction:
    def test_path_appended_to_trimmed_uri(self):
        with make_client(_echo, uri=BASE_URI + "//") as client:
            body = json.loads(client.send_request("GET", "/objects/1"))
        assert body["url"] == BASE_URI + "/objects/1"

    def test_query_string_kept(self):
        with make_client(_echo) as client:
            body = json.loads(client.send_request("GET", "/objects?id=7&x=y"))
        assert body["url"] == BASE_URI + "/objects?id=7&x=y"

    def test_body_sent_with_json_content_type(self):
        with make_client(_echo) as client:
            body = json.loads(client.send_request("POST", "/objects", '{"a": 1}'))
        assert body["method"] == "POST"
        assert body["content_type"] == "application/json"
        assert body["body"] == '{"a": 1}'

    def test_no_content_type_without_body(self):
        with make_client(_echo) as client:
            body = json.loads(client.send_request("GET", "/objects"))
        assert body["content_type"] is None

    def test_configured_header_overrides_content_type(self):
        with make_client(
            _echo, headers={"Content-Type": "application/merge-patch+json"}
        ) as client:
            body = json.loads(client.send_request("PATCH", "/objects/1", "{}"))
        assert body["content_type"] == "application/merge-patch+json"

    def test_configured_headers_sent(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(request.headers)
            return httpx.Response(200, json={})

        with make_client(handler, headers={"X-Tenant": "acme"}) as client:
            client.send_request("GET", "/x")
        assert seen["x-tenant"] == "acme"

    def test_options_mapping_accepted(self):
        client = RestApiClient(
            {"uri": BASE_URI, "rate_limit": 50}, _transport=httpx.MockTransport(_echo)
        )
        with client:
            assert client.uri == BASE_URI
            assert client.rate_limiter.burst == 50


# ---------------------------------------------------------------------------
# Response handling
# ---------------------------------------------------------------------------


class TestResponses:
    def test_success_body_returned_verbatim(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(201, text='{"id": "abc"}')

        with make_client(handler) as client:
            assert client.send_request("POST", "/objects", "{}") == '{"id": "abc"}'

    @pytest.mark.parametrize("status", [200, 204])
    def test_empty_success_becomes_empty_object(self, status):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status)

        with make_client(handler) as client:
            assert client.send_request("DELETE", "/objects/1") == "{}"

    def test_xssi_prefix_stripped(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text=')]}\'\n{"id": 1}')

        with make_client(handler, xssi_prefix=")]}'\n") as client:
            assert client.send_request("GET", "/objects/1") == '{"id": 1}'

    def test_xssi_prefix_absent_is_harmless(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text='{"id": 1}')

        with make_client(handler, xssi_prefix=")]}'\n") as client:
            assert client.send_request("GET", "/objects/1") == '{"id": 1}'

    @pytest.mark.parametrize("status", [400, 404, 409, 500, 503])
    def test_non_2xx_raises_with_body(self, status):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status, text='{"error": "nope"}')

        with make_client(handler) as client:
            with pytest.raises(APIError) as excinfo:
                client.send_request("GET", "/objects/1")
        assert excinfo.value.status_code == status
        assert excinfo.value.body == '{"error": "nope"}'
        assert f"'{status}'" in str(excinfo.value)

    def test_error_body_is_xssi_stripped(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(422, text="for(;;);{\"error\": \"bad\"}")

        with make_client(handler, xssi_prefix="for(;;);") as client:
            with pytest.raises(APIError) as excinfo:
                client.send_request("POST", "/objects", "{}")
        assert excinfo.value.body == '{"error": "bad"}'

    def test_send_returns_envelope_without_raising(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, text="missing", headers={"X-Trace": "t1"})

        with make_client(handler) as client:
            envelope = client.send("GET", "/objects/1")
        assert envelope.status_code == 404
        assert not envelope.ok
        assert envelope.body == "missing"
        assert envelope.headers["x-trace"] == "t1"

    def test_redirect_followed(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/redirect":
                return httpx.Response(308, headers={"Location": "/ok"})
            return httpx.Response(200, text="It works!")

        with make_client(handler) as client:
            assert client.send_request("GET", "/redirect") == "It works!"


# ---------------------------------------------------------------------------
# Transport failures and timeouts
# ---------------------------------------------------------------------------


class TestTransport:
    def test_mocked_read_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with make_client(handler, timeout=1) as client:
            with pytest.raises(RequestTimeoutError):
                client.send_request("GET", "/slow")

    def test_connect_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with make_client(handler) as client:
            with pytest.raises(TransportError) as excinfo:
                client.send_request("GET", "/x")
        assert not isinstance(excinfo.value, RequestTimeoutError)

    def test_silent_server_times_out(self, monkeypatch):
        monkeypatch.setenv("NO_PROXY", "*")
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        port = listener.getsockname()[1]
        try:
            with RestApiClient({"uri": f"http://127.0.0.1:{port}", "timeout": 1}) as client:
                start = time.monotonic()
                with pytest.raises(RequestTimeoutError):
                    client.send_request("GET", "/never")
                elapsed = time.monotonic() - start
        finally:
            listener.close()
        assert 0.9 <= elapsed < 3.5

    def test_slow_body_hits_request_deadline(self, drip_server):
        uri = drip_server(0.5)
        with RestApiClient({"uri": uri, "timeout": 1}) as client:
            start = time.monotonic()
            with pytest.raises(RequestTimeoutError):
                client.send_request("GET", "/slow")
            elapsed = time.monotonic() - start
        assert elapsed < 2.5

    def test_steady_body_within_deadline(self, drip_server):
        uri = drip_server(0.01)
        with RestApiClient({"uri": uri, "timeout": 3}) as client:
            body = client.send_request("GET", "/steady")
        assert json.loads(body) == {"data": "x" * 28}

    async def test_async_slow_body_hits_request_deadline(self, drip_server):
        uri = drip_server(0.5)
        async with AsyncRestApiClient({"uri": uri, "timeout": 1}) as client:
            start = time.monotonic()
            with pytest.raises(RequestTimeoutError):
                await client.send_request("GET", "/slow")
            elapsed = time.monotonic() - start
        assert elapsed < 2.5

    def test_wait_timeout_on_rate_limiter(self):
        with make_client(_echo, rate_limit=0.1) as client:
            client.send_request("GET", "/first")
            with pytest.raises(RequestCancelledError):
                client.send_request("GET", "/second", wait_timeout=0.1)


# ---------------------------------------------------------------------------
# Cookies
# ---------------------------------------------------------------------------


def _cookie_handler(seen: list[str | None]):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers.get("cookie"))
        return httpx.Response(200, json={}, headers={"Set-Cookie": "session=abc; Path=/"})

    return handler


class TestCookies:
    def test_cookies_dropped_by_default(self):
        seen: list[str | None] = []
        with make_client(_cookie_handler(seen)) as client:
            client.send_request("GET", "/login")
            client.send_request("GET", "/me")
        assert seen == [None, None]

    def test_cookies_persisted_when_enabled(self):
        seen: list[str | None] = []
        with make_client(_cookie_handler(seen), use_cookies=True) as client:
            client.send_request("GET", "/login")
            client.send_request("GET", "/me")
        assert seen == [None, "session=abc"]


# ---------------------------------------------------------------------------
# Rate limiting, context and lifecycle
# ---------------------------------------------------------------------------


class TestRateLimiting:
    def test_one_request_per_second(self):
        with make_client(_echo, rate_limit=1) as client:
            start = time.monotonic()
            for _ in range(4):
                client.send_request("GET", "/x")
            assert time.monotonic() - start >= 2.9


class TestLifecycle:
    def test_check_connection_reads_test_path(self):
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(f"{request.method} {request.url.path}")
            return httpx.Response(200, json={"status": "ok"})

        with make_client(handler, test_path="/health") as client:
            client.check_connection()
        assert paths == ["GET /health"]

    def test_check_connection_raises_on_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="down")

        with make_client(handler, test_path="/health") as client:
            with pytest.raises(APIError):
                client.check_connection()

    def test_check_connection_without_test_path_sends_nothing(self):
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(200)

        with make_client(handler) as client:
            client.check_connection()
        assert paths == []

    def test_context_manager_closes_client(self):
        with make_client(_echo) as client:
            pass
        assert client._client.is_closed

    def test_each_request_gets_its_own_request_id(self):
        ids: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            ids.append(get_request_id())
            return httpx.Response(200, json={})

        with make_client(handler) as client:
            client.send_request("GET", "/a")
            client.send_request("GET", "/b")
        assert all(ids)
        assert ids[0] != ids[1]
        assert get_request_id() == ""

    def test_request_log_redacts_authorization(self, caplog):
        with make_client(_echo, username="alice", password="pw") as client:
            with caplog.at_level(logging.DEBUG, logger="restclient.client"):
                client.send_request("GET", "/x")
        sent = [r for r in caplog.records if r.getMessage().startswith("Sending")]
        assert sent
        assert sent[0].headers["authorization"] == "********"
        assert sent[0].method == "GET"


# ---------------------------------------------------------------------------
# Async client
# ---------------------------------------------------------------------------


class TestAsyncClient:
    async def test_send_request(self):
        async with make_async_client(_echo) as client:
            body = json.loads(await client.send_request("PUT", "/objects/1", '{"a": 1}'))
        assert body["method"] == "PUT"
        assert body["url"] == BASE_URI + "/objects/1"
        assert body["content_type"] == "application/json"

    async def test_non_2xx(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(409, text="conflict")

        async with make_async_client(handler) as client:
            with pytest.raises(APIError) as excinfo:
                await client.send_request("POST", "/objects", "{}")
        assert excinfo.value.status_code == 409
        assert excinfo.value.body == "conflict"

    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        async with make_async_client(handler, timeout=1) as client:
            with pytest.raises(RequestTimeoutError):
                await client.send_request("GET", "/slow")

    async def test_concurrent_requests_share_limiter(self):
        async with make_async_client(_echo, rate_limit=2) as client:
            start = time.monotonic()
            await asyncio.gather(*(client.send_request("GET", f"/{i}") for i in range(4)))
            assert time.monotonic() - start >= 0.9

    async def test_check_connection(self):
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(204)

        async with make_async_client(handler, test_path="/ping") as client:
            await client.check_connection()
        assert paths == ["/ping"]

    async def test_oauth_token_fetched_once(self):
        calls = {"token": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/token":
                calls["token"] += 1
                return httpx.Response(200, json={"access_token": "async-tok", "expires_in": 600})
            return httpx.Response(200, text=request.headers["authorization"])

        async with make_async_client(
            handler,
            oauth={
                "client_id": "cid",
                "client_secret": "secret",
                "token_url": "https://auth.example.com/token",
            },
        ) as client:
            first = await client.send_request("GET", "/a")
            second = await client.send_request("GET", "/b")
        assert first == second == "Bearer async-tok"
        assert calls["token"] == 1
