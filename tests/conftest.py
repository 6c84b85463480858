"""
Shared test fixtures and helpers.
"""
from __future__ import annotations

import json
from typing import Any, Callable, Dict, Generator, Iterable, List, Optional, Tuple
from urllib.parse import quote

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.requests import Request

from corsproxy.config import AppConfig, get_config
from corsproxy.main import create_app


def cors_url(policy: Dict[str, Any], path: str = "/") -> str:
    """Build a relay URL carrying `policy` in its `cors` query parameter."""
    return f"{path}?cors={quote(json.dumps(policy))}"


def make_request(
    method: str = "GET",
    path: str = "/",
    headers: Optional[Iterable[Tuple[str, str]]] = None,
    chunks: Optional[List[bytes]] = None,
    disconnect_after: Optional[int] = None,
    client: Optional[Tuple[str, int]] = ("10.0.0.7", 52100),
) -> Request:
    """
    Build a Starlette request whose body arrives as `chunks`.

    With `disconnect_after`, the caller disconnects after that many chunks.
    """
    chunks = list(chunks or [])
    messages: List[Dict[str, Any]] = []
    for i, chunk in enumerate(chunks):
        if disconnect_after is not None and i >= disconnect_after:
            break
        messages.append({"type": "http.request", "body": chunk, "more_body": i < len(chunks) - 1})
    if disconnect_after is not None:
        messages.append({"type": "http.disconnect"})
    if not messages:
        messages.append({"type": "http.request", "body": b"", "more_body": False})

    async def receive() -> Dict[str, Any]:
        if messages:
            return messages.pop(0)
        return {"type": "http.disconnect"}

    path_only, _, query = path.partition("?")
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path_only,
        "raw_path": path_only.encode(),
        "root_path": "",
        "query_string": query.encode(),
        "headers": [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in headers or []],
        "client": client,
        "server": ("testserver", 80),
    }
    return Request(scope, receive)


class UpstreamRecorder:
    """
    httpx.MockTransport handler recording every upstream request.

    The transport reads the full request body before calling the handler,
    so `bodies` holds exactly the bytes the relay wrote upstream.
    """

    def __init__(self, respond: Optional[Callable[[httpx.Request], httpx.Response]] = None):
        self.requests: List[httpx.Request] = []
        self.bodies: List[bytes] = []
        self._respond = respond or (lambda request: httpx.Response(200, content=b"ok"))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.bodies.append(request.content)
        return self._respond(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def test_config() -> AppConfig:
    """Config with the defaults the tests rely on."""
    return AppConfig(
        corsproxy_read_timeout=5.0,
        corsproxy_max_body_size=None,
        corsproxy_forward_client_address=True,
        corsproxy_internal_prefix="/_corsproxy",
    )


@pytest.fixture
def relay_app(test_config) -> FastAPI:
    """A fresh relay app built from the test config."""
    return create_app(test_config)


@pytest.fixture
def client(relay_app) -> Generator[TestClient, None, None]:
    """Test client running the app lifespan (opens the shared HTTP client)."""
    with TestClient(relay_app) as test_client:
        yield test_client


@pytest.fixture
def clear_config_cache() -> Generator[None, None, None]:
    """Clear the cached environment config around a test."""
    get_config.cache_clear()
    yield
    get_config.cache_clear()
