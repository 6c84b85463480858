"""
Relay router - the single catch-all endpoint forwarding every request to its CORS target.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from corsproxy.logging import get_logger
from corsproxy.services.policy import ForwardingPolicy, resolve_policy
from corsproxy.services.relay import relay_request
from corsproxy.state import AppState, get_app_state

logger = get_logger(__name__)

router = APIRouter(tags=["relay"])

RELAY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]


def _path_with_query(request: Request) -> str:
    """The inbound path plus its query string, as the caller sent it."""
    query = request.url.query
    return f"{request.url.path}?{query}" if query else request.url.path


def get_policy(request: Request) -> ForwardingPolicy:
    """
    Resolve the forwarding policy of the inbound request.

    Raises:
        ConfigurationMissing: 403 if neither the query nor the referer carries a policy
        ConfigurationMalformed: 400 if the policy document cannot be parsed or validated
    """
    policy = resolve_policy(
        method=request.method,
        query_params=request.query_params,
        headers=request.headers,
        path=_path_with_query(request),
    )
    logger.debug(f"Resolved policy for {request.method} {request.url.path}: {policy.method} {policy.target_url}")
    return policy


@router.api_route(
    "/{path:path}",
    methods=RELAY_METHODS,
    response_class=Response,
    include_in_schema=False,
)
async def relay(
    request: Request,
    policy: ForwardingPolicy = Depends(get_policy),
    state: AppState = Depends(get_app_state),
) -> Response:
    """
    Forward the request to the policy's target and stream the upstream answer back.

    **Policy sources** (first match wins):
    - `cors` query parameter holding the JSON policy document
    - `cors` query parameter of the `referer` URL; its `url` is the base the path is resolved against

    **Flow:**
    1. Resolve the forwarding policy
    2. Rewrite request headers
    3. Stream the request body to the target
    4. Rewrite response headers, add CORS headers
    5. Stream the upstream body back
    """
    if state.http_client is None:
        logger.error("HTTP client not initialized")
        raise HTTPException(status_code=500, detail="Internal server error")

    return await relay_request(
        request,
        policy,
        client=state.http_client,
        config=state.config,
    )
