"""
Tests for the forward dispatcher - outbound call parameters and body selection.
"""
import httpx
import pytest

from corsproxy.services.dispatch import build_outbound_call, declares_body
from corsproxy.services.headers import HeaderSet
from corsproxy.services.policy import ForwardingPolicy


async def _stream():
    yield b"chunk"


class TestDeclaresBody:
    """Tests for declares_body function."""

    @pytest.mark.parametrize("headers, expected", [
        ([], False),
        ([("content-length", "0")], False),
        ([("content-length", "12")], True),
        ([("content-length", "bogus")], False),
        ([("transfer-encoding", "chunked")], True),
    ])
    def test_framing_headers(self, headers, expected):
        assert declares_body(HeaderSet(headers)) is expected


class TestBuildOutboundCall:
    """Tests for build_outbound_call function."""

    def test_target_keeps_path_and_query(self):
        policy = ForwardingPolicy(target_url="https://api.example.org/data?page=2&q=a%20b", method="GET")
        call = build_outbound_call(policy, HeaderSet(), None)

        assert call.url == httpx.URL("https://api.example.org/data?page=2&q=a%20b")
        assert call.method == "GET"

    @pytest.mark.parametrize("url, secure", [
        ("https://api.example.org/", True),
        ("http://api.example.org/", False),
        ("http://api.example.org:443/", False),
    ])
    def test_scheme_selects_transport(self, url, secure):
        call = build_outbound_call(ForwardingPolicy(target_url=url, method="GET"), HeaderSet(), None)

        assert call.is_secure is secure

    def test_follow_redirects_from_policy(self):
        policy = ForwardingPolicy(target_url="http://example.com/", method="GET", follow_redirects=False)

        assert build_outbound_call(policy, HeaderSet(), None).follow_redirects is False

    def test_drops_hop_by_hop_headers(self):
        headers = HeaderSet([
            ("connection", "keep-alive"),
            ("keep-alive", "timeout=5"),
            ("upgrade", "h2c"),
            ("te", "trailers"),
            ("accept", "*/*"),
        ])
        policy = ForwardingPolicy(target_url="http://example.com/", method="GET")
        call = build_outbound_call(policy, headers, None)

        assert call.headers.items() == [("accept", "*/*")]
        # Input headers untouched
        assert "connection" in headers

    def test_inbound_stream_is_body_source(self):
        stream = _stream()
        policy = ForwardingPolicy(target_url="http://example.com/", method="POST")
        call = build_outbound_call(policy, HeaderSet([("content-length", "5")]), stream)

        assert call.content is stream
        assert call.headers.get("content-length") == "5"

    def test_literal_body_overrides_stream(self):
        policy = ForwardingPolicy(target_url="http://example.com/", method="POST", literal_body=b"fixed")
        headers = HeaderSet([("content-length", "5000"), ("transfer-encoding", "chunked")])
        call = build_outbound_call(policy, headers, _stream())

        assert call.content == b"fixed"
        assert "content-length" not in call.headers
        assert "transfer-encoding" not in call.headers

    def test_no_body(self):
        policy = ForwardingPolicy(target_url="http://example.com/", method="GET")

        assert build_outbound_call(policy, HeaderSet(), None).content is None

    async def test_to_request_builds_httpx_request(self):
        policy = ForwardingPolicy(target_url="https://api.example.org/data?x=1", method="PATCH", literal_body=b"{}")
        headers = HeaderSet([("host", "api.example.org"), ("x-a", "1"), ("x-a", "2")])
        call = build_outbound_call(policy, headers, None)

        async with httpx.AsyncClient() as client:
            request = call.to_request(client)

        assert request.method == "PATCH"
        assert request.url == httpx.URL("https://api.example.org/data?x=1")
        assert request.headers.get_list("x-a") == ["1", "2"]
        assert request.headers["host"] == "api.example.org"
        assert request.content == b"{}"
        assert request.headers["content-length"] == "2"
