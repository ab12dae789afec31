"""Middleware — CORS, per-request log context, error mapping."""

from __future__ import annotations

import time
import uuid
from typing import Callable

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from neuronest.config import Settings
from neuronest.errors import DeviceConnectionError

logger = structlog.get_logger(__name__)

# Polled by dashboards on every tick.
_QUIET_PATHS = frozenset({"/health", "/reading", "/prediction"})


def parse_origins(raw: str) -> list[str]:
    """``"*"`` or a comma-separated origin list."""
    raw = raw.strip()
    if raw == "*":
        return ["*"]
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind a request id into the structlog context, time the call, trap crashes.

    Anything that escapes the route and the registered exception handlers
    becomes a JSON 500.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:12]
        structlog.contextvars.bind_contextvars(request_id=request_id)
        started = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("http.unhandled_error", method=request.method, path=request.url.path)
            response = JSONResponse(status_code=500, content={"detail": "Internal server error."})
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers["x-request-id"] = request_id
        if request.url.path not in _QUIET_PATHS:
            logger.info(
                "http.request",
                method=request.method,
                path=request.url.path,
                status=response.status_code,
                elapsed_ms=round((time.monotonic() - started) * 1000, 1),
                request_id=request_id,
            )
        return response


async def device_connection_error_handler(request: Request, exc: DeviceConnectionError) -> JSONResponse:
    logger.warning("http.device_unreachable", path=request.url.path, kind=exc.kind.value)
    return JSONResponse(status_code=502, content={"detail": exc.user_message, "kind": exc.kind.value})


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """CORS innermost, request context outermost."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=parse_origins(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)
    app.add_exception_handler(DeviceConnectionError, device_connection_error_handler)
