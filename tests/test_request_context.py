"""Tests for request ID generation and contextvar propagation."""

from __future__ import annotations

import asyncio
import re

from restclient.services.request_context import (
    generate_request_id,
    get_request_id,
    request_id_var,
    request_scope,
)


def test_generate_request_id_is_hex():
    rid = generate_request_id()
    assert re.fullmatch(r"[0-9a-f]{32}", rid), f"Not 32 hex chars: {rid}"


def test_generate_request_id_unique():
    ids = {generate_request_id() for _ in range(100)}
    assert len(ids) == 100


def test_default_is_empty():
    assert get_request_id() == ""


def test_set_and_get():
    token = request_id_var.set("abc123")
    try:
        assert get_request_id() == "abc123"
    finally:
        request_id_var.reset(token)


def test_scope_generates_and_resets():
    with request_scope() as rid:
        assert re.fullmatch(r"[0-9a-f]{32}", rid)
        assert get_request_id() == rid
    assert get_request_id() == ""


def test_scope_with_explicit_id_nests():
    with request_scope("outer"):
        with request_scope("inner"):
            assert get_request_id() == "inner"
        assert get_request_id() == "outer"


def test_scope_resets_on_error():
    try:
        with request_scope("failing"):
            raise RuntimeError("boom")
    except RuntimeError:
        pass
    assert get_request_id() == ""


async def test_scopes_isolated_between_tasks():
    async def worker(name: str) -> str:
        with request_scope(name):
            await asyncio.sleep(0.01)
            return get_request_id()

    assert await asyncio.gather(worker("a"), worker("b")) == ["a", "b"]
