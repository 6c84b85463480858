"""
Application state - per-app resources opened at startup.
"""
from __future__ import annotations

import httpx
from fastapi import Request

from corsproxy.config import AppConfig


class AppState:
    """
    Application state container.
    Created by create_app, filled by the lifespan, injected into routes via FastAPI dependencies.
    """
    
    def __init__(self, config: AppConfig):
        self.config = config
        self.http_client: httpx.AsyncClient | None = None


def get_app_state(request: Request) -> AppState:
    """FastAPI dependency returning the state of the app serving this request."""
    return request.app.state.relay
