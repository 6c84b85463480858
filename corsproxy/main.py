"""
CORS Relay - per-request configurable CORS reverse proxy

Entry point for the FastAPI application.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from dotenv import load_dotenv

from corsproxy.logging import get_logger
from corsproxy.state import AppState
from corsproxy.routers import internal, relay
from corsproxy.config import AppConfig, get_config
from corsproxy.exceptions import (
    ConfigurationMalformed,
    ConfigurationMissing,
    RelayError,
)
from corsproxy.services.headers import HeaderSet, promote_cors_headers

load_dotenv()

logger = get_logger(__name__)


def _init_http_client(state: AppState) -> None:
    """Initialize shared HTTP client for upstream requests."""
    config = state.config
    state.http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(config.corsproxy_read_timeout, connect=config.corsproxy_connect_timeout),
        limits=httpx.Limits(max_connections=config.corsproxy_max_connections),
    )
    logger.info("HTTP client initialized")


async def _shutdown_http_client(state: AppState) -> None:
    """Close the shared HTTP client."""
    if state.http_client:
        await state.http_client.aclose()
        state.http_client = None
        logger.info("HTTP client closed")


def _with_cors_headers(request: Request, response: Response) -> Response:
    """Add the CORS promotion headers so browser callers can read the rejection."""
    promoted = promote_cors_headers(HeaderSet.from_raw(request.headers.raw))
    for name, value in promoted:
        response.headers[name] = value
    return response


async def _configuration_missing(request: Request, exc: ConfigurationMissing) -> Response:
    logger.warning(f"No CORS configuration for {request.method} {request.url.path}")
    return _with_cors_headers(request, PlainTextResponse(str(exc), status_code=exc.status_code))


async def _configuration_malformed(request: Request, exc: ConfigurationMalformed) -> Response:
    # The parser text stays in the logs
    logger.warning(f"Malformed CORS configuration from {exc.source}: {exc.reason}")
    return _with_cors_headers(request, JSONResponse(
        {"error": exc.error_code, "detail": str(exc)},
        status_code=exc.status_code,
    ))


async def _relay_error(request: Request, exc: RelayError) -> Response:
    logger.warning(f"Rejected {request.method} {request.url.path}: {exc}")
    return _with_cors_headers(request, JSONResponse(
        {"error": exc.error_code, "detail": str(exc)},
        status_code=exc.status_code,
    ))


async def _unexpected_error(request: Request, exc: Exception) -> Response:
    logger.exception(f"Unexpected error handling {request.method} {request.url.path}")
    return _with_cors_headers(request, JSONResponse({"error": "internal_error"}, status_code=500))


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """
    Create the relay application.

    Args:
        config: Process configuration; read from the environment when omitted

    Returns:
        The FastAPI app. Its lifespan opens and closes the shared HTTP client.
    """
    state = AppState(config or get_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager - handles startup and shutdown."""
        _init_http_client(state)
        try:
            yield
        finally:
            await _shutdown_http_client(state)

    app = FastAPI(
        title="CORS Relay",
        description="Per-request configurable CORS reverse proxy",
        lifespan=lifespan,
    )
    app.state.relay = state

    app.add_exception_handler(ConfigurationMissing, _configuration_missing)
    app.add_exception_handler(ConfigurationMalformed, _configuration_malformed)
    app.add_exception_handler(RelayError, _relay_error)
    app.add_exception_handler(Exception, _unexpected_error)

    # Internal routes first, the relay route matches every path
    app.include_router(internal.router, prefix=state.config.corsproxy_internal_prefix)
    app.include_router(relay.router)
    return app


def run(config: Optional[AppConfig] = None) -> None:
    """Start the listener on the configured host and port."""
    config = config or get_config()
    logger.info(f"CORS relay listening on {config.corsproxy_host}:{config.corsproxy_port}")
    uvicorn.run(
        create_app(config),
        host=config.corsproxy_host,
        port=config.corsproxy_port,
        log_level="warning",
    )


app = create_app()


if __name__ == "__main__":
    run()
