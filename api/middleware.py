"""
Global middleware and exception handlers.
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from connectors.errors import CredentialInvalid, EspError, RateLimited, RemoteNotFound

logger = logging.getLogger(__name__)


def register_middleware(app: FastAPI) -> None:
    """Attach app-level middleware and map connector errors onto HTTP responses."""

    @app.middleware("http")
    async def request_timer(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        # Path only: query strings never reach the log.
        logger.debug("%s %s %d (%.3fs)", request.method, request.url.path, response.status_code, elapsed)
        return response

    @app.exception_handler(EspError)
    async def esp_error_handler(request: Request, exc: EspError):
        if isinstance(exc, CredentialInvalid):
            code = 400
        elif isinstance(exc, RemoteNotFound):
            code = 404
        elif isinstance(exc, RateLimited):
            code = 429
        else:
            code = 502
        logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc)
        return JSONResponse(status_code=code, content={"detail": str(exc), "error": type(exc).__name__})
