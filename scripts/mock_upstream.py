#!/usr/bin/env python3
"""
Mock upstream server for trying out the CORS relay.

Every path echoes back what the relay sent:
- method, path and query
- request headers (including x-forwarded-for and host)
- body size and text

Run with: python scripts/mock_upstream.py
Listens on: http://localhost:9001
"""
from __future__ import annotations

from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse
import uvicorn

app = FastAPI(title="Mock Upstream Server", description="Echo server for the CORS relay")


def log_request(request: Request, size: int):
    """Log incoming request line."""
    timestamp = datetime.now().strftime("%H:%M:%S")
    forwarded_for = request.headers.get("x-forwarded-for", "-")
    print(f"[{timestamp}] {request.method} {request.url.path} | {size} bytes | from {forwarded_for}")


@app.get("/redirect")
async def redirect():
    """Redirect to /echo, to try followRedirect."""
    return RedirectResponse("/echo", status_code=302)


@app.get("/health")
async def health():
    """Health check."""
    return {"status": "healthy", "server": "mock-upstream"}


@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"])
async def echo(path: str, request: Request):
    """Echo the received request."""
    body = await request.body()
    log_request(request, len(body))
    
    response = JSONResponse({
        "method": request.method,
        "path": "/" + path,
        "query": request.url.query,
        "headers": request.headers.items(),
        "body_size": len(body),
        "body": body.decode("utf-8", errors="replace"),
    })
    response.set_cookie("upstream", "1")
    return response


if __name__ == "__main__":
    print("\n🔁 Mock Upstream Server")
    print("=" * 50)
    print("Listening on http://localhost:9001")
    print("Endpoints:")
    print("  GET  /redirect - 302 to /echo")
    print("  ANY  /*        - echo the request")
    print("=" * 50 + "\n")
    
    uvicorn.run(app, host="127.0.0.1", port=9001, log_level="warning")
