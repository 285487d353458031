"""HTTP middleware for the graph API.

``APIKeyMiddleware`` guards every route outside the public prefixes.  A
key is accepted from ``X-API-Key`` or from an ``Authorization: Bearer``
header.  ``RequestAuditMiddleware`` tags each request with an id (taken
from ``X-Request-ID`` when the caller sends one), echoes it on the
response and writes one ``audit`` log line per request.
"""

from __future__ import annotations

import logging
import secrets
import time
import uuid
from typing import Callable, Optional, Sequence

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

audit_logger = logging.getLogger("audit")

PUBLIC_PREFIXES = ("/v1/health", "/docs", "/redoc", "/openapi.json")
REQUEST_ID_HEADER = "X-Request-ID"


def presented_key(request: Request) -> Optional[str]:
    """The API key a request carries, if any."""
    key = request.headers.get("X-API-Key")
    if key:
        return key
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return None


def _client(request: Request) -> str:
    return request.client.host if request.client else "-"


class APIKeyMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, api_key: str, public_prefixes: Sequence[str] = PUBLIC_PREFIXES):
        super().__init__(app)
        self.api_key = api_key
        self.public_prefixes = tuple(public_prefixes)

    def is_public(self, path: str) -> bool:
        return any(path == p or path.startswith(p + "/") for p in self.public_prefixes)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if self.is_public(request.url.path):
            return await call_next(request)

        key = presented_key(request)
        if key is None:
            reason = "missing API key"
        elif not secrets.compare_digest(key.encode(), self.api_key.encode()):
            reason = "invalid API key"
        else:
            return await call_next(request)

        audit_logger.warning("auth rejected: %s %s from %s (%s)",
                             request.method, request.url.path, _client(request), reason)
        return JSONResponse(
            status_code=401,
            content={"error": reason, "status_code": 401},
            headers={"WWW-Authenticate": "Bearer"},
        )


class RequestAuditMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:16]
        request.state.request_id = request_id
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            audit_logger.exception("%s %s failed id=%s client=%s",
                                   request.method, request.url.path, request_id,
                                   _client(request))
            raise

        response.headers[REQUEST_ID_HEADER] = request_id
        audit_logger.info(
            "%s %s -> %d in %.1fms id=%s client=%s",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - started) * 1000, request_id, _client(request),
        )
        return response
