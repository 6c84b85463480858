"""
Streaming relay - sends the outbound call and streams bodies in both directions.
"""
from __future__ import annotations

import time
from typing import AsyncIterable, AsyncIterator, Optional

import httpx
from fastapi import Request, Response
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect

from corsproxy.config import AppConfig
from corsproxy.exceptions import RequestBodyTooLarge, UpstreamError
from corsproxy.logging import get_logger
from corsproxy.services.dispatch import OutboundCall, build_outbound_call, declares_body
from corsproxy.services.headers import (
    HeaderSet,
    promote_cors_headers,
    transform_request_headers,
    transform_response_headers,
)
from corsproxy.services.policy import ForwardingPolicy

logger = get_logger(__name__)

# Framing headers of the upstream connection; the ASGI server re-frames the body
HOP_BY_HOP_RESPONSE_HEADERS = frozenset({"connection", "keep-alive", "transfer-encoding"})

# ASGI has no reason phrase, so an overridden status message travels here
STATUS_MESSAGE_HEADER = "x-cors-status-message"


class BodyCounter:
    """Counts bytes flowing through a body stream and enforces an optional limit."""

    def __init__(self, limit: Optional[int] = None):
        self.limit = limit
        self.bytes = 0

    async def wrap(self, stream: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
        async for chunk in stream:
            self.bytes += len(chunk)
            if self.limit is not None and self.bytes > self.limit:
                raise RequestBodyTooLarge(self.limit)
            yield chunk


def check_declared_length(headers: HeaderSet, limit: Optional[int]) -> None:
    """Reject an oversized body from its Content-Length before contacting the upstream."""
    if limit is None:
        return
    content_length = headers.get("content-length")
    if content_length:
        try:
            if int(content_length) > limit:
                raise RequestBodyTooLarge(limit)
        except ValueError:
            pass  # Invalid content-length header, the running count still applies


def empty_response(status_code: int, headers: HeaderSet) -> Response:
    """A response with no body carrying exactly `headers`."""
    headers = headers.copy()
    headers.set("content-length", "0")
    response = Response(status_code=status_code)
    response.raw_headers = headers.raw()
    return response


def upstream_error(error: httpx.RequestError, target: str) -> UpstreamError:
    """Map a transport failure to an UpstreamError."""
    timeout = isinstance(error, httpx.TimeoutException)
    return UpstreamError(f"{type(error).__name__}: {error}", target=target, timeout=timeout)


async def _relay_body(upstream: httpx.Response, start_time: float) -> AsyncIterator[bytes]:
    """
    Stream the upstream body to the caller untouched.

    Closing the upstream response in `finally` aborts upstream work when the
    caller disconnects. An upstream read error is re-raised so the server
    drops the caller's connection.
    """
    sent = 0
    try:
        async for chunk in upstream.aiter_raw():
            sent += len(chunk)
            yield chunk
    except httpx.HTTPError as e:
        logger.error(f"Upstream {upstream.request.url} failed mid-stream after {sent} bytes: {e}")
        raise
    finally:
        await upstream.aclose()
        elapsed_ms = (time.time() - start_time) * 1000
        logger.debug(f"Relayed {sent} bytes from {upstream.request.url} in {elapsed_ms:.2f}ms")


def build_client_headers(
    promoted: HeaderSet,
    upstream: httpx.Response,
    policy: ForwardingPolicy,
) -> HeaderSet:
    """CORS promotion headers overlaid by the policy-transformed upstream headers."""
    upstream_headers = HeaderSet(upstream.headers.multi_items())
    for name in HOP_BY_HOP_RESPONSE_HEADERS:
        upstream_headers.delete(name)

    headers = promoted.copy()
    headers.merge(transform_response_headers(upstream_headers, policy))
    if policy.override_status_message is not None:
        headers.set(STATUS_MESSAGE_HEADER, policy.override_status_message)
    return headers


async def relay_request(
    request: Request,
    policy: ForwardingPolicy,
    client: httpx.AsyncClient,
    config: AppConfig,
) -> Response:
    """
    Relay one inbound request to the policy's target and stream the answer back.

    Args:
        request: The inbound request
        policy: Fully resolved forwarding policy
        client: Shared HTTP client for connection pooling
        config: Process configuration

    Returns:
        A StreamingResponse relaying the upstream body, or an empty response
        when the upstream could not be reached

    Raises:
        RequestBodyTooLarge: If the inbound body exceeds the configured limit
    """
    inbound = HeaderSet.from_raw(request.headers.raw)
    promoted = promote_cors_headers(inbound)
    limit = config.corsproxy_max_body_size
    check_declared_length(inbound, limit)

    target = policy.target
    client_address = None
    if config.corsproxy_forward_client_address and request.client is not None:
        client_address = request.client.host

    outbound_headers = transform_request_headers(
        inbound,
        policy,
        target_host=target.netloc.decode("ascii"),
        client_address=client_address,
    )

    upload = BodyCounter(limit)
    body = upload.wrap(request.stream()) if declares_body(inbound) else None
    call: OutboundCall = build_outbound_call(policy, outbound_headers, body)

    start_time = time.time()
    try:
        upstream = await client.send(
            call.to_request(client),
            stream=True,
            follow_redirects=call.follow_redirects,
        )
    except RequestBodyTooLarge:
        logger.warning(f"Request body to {target} exceeded {limit} bytes")
        raise
    except ClientDisconnect:
        logger.warning(f"Client disconnected after uploading {upload.bytes} bytes to {target}")
        return empty_response(400, promoted)
    except httpx.RequestError as e:
        error = upstream_error(e, str(target))
        logger.error(f"Upstream error relaying {call.method} {target}: {error}")
        return empty_response(error.status_code, promoted)

    # Until the StreamingResponse owns the body, closing the upstream is on us
    try:
        status_code = policy.override_status_code or upstream.status_code
        raw_headers = build_client_headers(promoted, upstream, policy).raw()
    except BaseException:
        await upstream.aclose()
        raise

    logger.info(
        f"{call.method} {target} -> {upstream.status_code} (sent {status_code}, "
        f"uploaded {upload.bytes} bytes)"
    )

    response = StreamingResponse(
        _relay_body(upstream, start_time),
        status_code=status_code,
        background=BackgroundTask(upstream.aclose),
    )
    response.raw_headers = raw_headers
    return response
