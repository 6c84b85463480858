"""
Forward dispatcher - builds the outbound call to the upstream target.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterable, Optional, Union

import httpx

from corsproxy.services.headers import HeaderSet
from corsproxy.services.policy import ForwardingPolicy

# Hop-by-hop headers owned by the HTTP client, never forwarded
HOP_BY_HOP_REQUEST_HEADERS = frozenset({
    "connection", "keep-alive", "proxy-connection", "te", "trailer", "upgrade"
})

BodySource = Union[bytes, AsyncIterable[bytes], None]


@dataclass(frozen=True)
class OutboundCall:
    """Everything needed to issue the upstream request."""
    method: str
    url: httpx.URL
    headers: HeaderSet
    content: BodySource
    follow_redirects: bool

    @property
    def is_secure(self) -> bool:
        return self.url.scheme == "https"

    def to_request(self, client: httpx.AsyncClient) -> httpx.Request:
        """Build the httpx request; the client picks the TLS transport from the scheme."""
        return client.build_request(
            self.method,
            self.url,
            headers=self.headers.items(),
            content=self.content,
        )


def declares_body(headers: HeaderSet) -> bool:
    """Whether the inbound request announces a body through its framing headers."""
    if "transfer-encoding" in headers:
        return True
    try:
        return int(headers.get("content-length") or 0) > 0
    except ValueError:
        return False


def build_outbound_call(
    policy: ForwardingPolicy,
    headers: HeaderSet,
    inbound_body: Optional[AsyncIterable[bytes]],
) -> OutboundCall:
    """
    Build the outbound call parameters.

    Args:
        policy: Resolved forwarding policy
        headers: Request-direction transformed headers
        inbound_body: The caller's body stream, or None when it sent no body

    Returns:
        The OutboundCall to hand to the streaming relay
    """
    outbound = headers.copy()
    for name in HOP_BY_HOP_REQUEST_HEADERS:
        outbound.delete(name)

    content: BodySource
    if policy.literal_body is not None:
        # The client frames the literal body itself
        outbound.delete("content-length")
        outbound.delete("transfer-encoding")
        content = policy.literal_body
    elif inbound_body is not None:
        content = inbound_body
    else:
        content = None

    return OutboundCall(
        method=policy.method or "GET",
        url=policy.target,
        headers=outbound,
        content=content,
        follow_redirects=policy.follow_redirects,
    )
