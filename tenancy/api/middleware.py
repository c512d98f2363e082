"""HTTP middleware: security headers, invitation rate limits, request logging."""

import logging
import re
import time
from collections import defaultdict, deque

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from tenancy.core.config import get_settings
from tenancy.core.metrics import observe_http_request
from tenancy.core.request_context import new_request_id, request_id_context
from tenancy.core.security import decode_token
from tenancy.core.structured_logging import log_json

logger = logging.getLogger(__name__)
settings = get_settings()

_CREATE_INVITATION_PATH = re.compile(r"^/api/workspaces/[^/]+/invitations/?$")
_RATE_WINDOW_SECONDS = 3600.0
_UNLOGGED_PATHS = frozenset({"/api/metrics", "/api/health"})

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers; HSTS only for HTTPS requests in production."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)

        if settings.environment == "production":
            scheme = request.headers.get("x-forwarded-proto") or request.url.scheme
            if scheme == "https":
                response.headers.setdefault(
                    "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
                )
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding one-hour window on invitation creation and acceptance.

    Keyed by the bearer token's subject, or by client IP for anonymous calls.
    Counts live in process memory, so each worker enforces its own window.
    Disabled outside production.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self._hits: dict[tuple[str, str], deque[float]] = defaultdict(deque)

    @staticmethod
    def bucket_for(method: str, path: str) -> tuple[str, int] | None:
        """Return ``(bucket, hourly_limit)`` for rate-limited routes."""
        if method != "POST":
            return None
        if path == "/api/invitations/accept":
            return "accept_invite", settings.rate_limit_accept_invite_per_hour
        if _CREATE_INVITATION_PATH.match(path):
            return "invite", settings.rate_limit_invite_per_hour
        return None

    @staticmethod
    def caller_key(request: Request) -> str:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            payload = decode_token(auth_header.removeprefix("Bearer ").strip())
            if payload and payload.get("sub"):
                return f"user:{payload['sub']}"
        return f"ip:{request.client.host if request.client else 'unknown'}"

    def hit(self, bucket: str, caller: str, limit: int, now: float) -> bool:
        """Record one request; False when the caller is already at ``limit``."""
        hits = self._hits[(bucket, caller)]
        while hits and hits[0] <= now - _RATE_WINDOW_SECONDS:
            hits.popleft()
        if len(hits) >= limit:
            return False
        hits.append(now)
        return True

    async def dispatch(self, request: Request, call_next):
        if settings.environment != "production":
            return await call_next(request)

        bucket = self.bucket_for(request.method, request.url.path)
        if bucket is not None:
            name, limit = bucket
            if not self.hit(name, self.caller_key(request), limit, time.monotonic()):
                return JSONResponse(
                    status_code=429,
                    content={
                        "error": "rate_limited",
                        "message": "Too many requests. Please try again later.",
                        "details": {"limit": limit, "window": "1h"},
                    },
                )
        return await call_next(request)


def _incoming_request_id(request: Request) -> str | None:
    """Reuse a caller supplied correlation id if it is short and single-line."""
    for header in ("X-Request-ID", "X-Correlation-ID"):
        value = (request.headers.get(header) or "").strip()
        if value and len(value) <= 128 and "\n" not in value and "\r" not in value:
            return value
    return None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One JSON log line and one metrics sample per request.

    Every request runs inside a request-id context so service and domain-error
    logs carry the same ``request_id``; the id is echoed in ``X-Request-ID``.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = _incoming_request_id(request) or new_request_id()
        request.state.request_id = request_id
        method = request.method
        path = request.url.path
        client_ip = request.client.host if request.client else "unknown"
        started = time.perf_counter()

        with request_id_context(request_id):
            try:
                response = await call_next(request)
            except Exception as exc:
                log_json(
                    logger,
                    logging.ERROR,
                    "request_error",
                    method=method,
                    path=path,
                    status_code=500,
                    duration_ms=round((time.perf_counter() - started) * 1000, 2),
                    client_ip=client_ip,
                    error=str(exc),
                    exception=exc.__class__.__name__,
                )
                raise

            duration_ms = (time.perf_counter() - started) * 1000
            response.headers.setdefault("X-Request-ID", request_id)

            route = request.scope.get("route")
            observe_http_request(
                method=method,
                route=getattr(route, "path", None) or "unmatched",
                status_code=response.status_code,
                duration_ms=duration_ms,
            )

            if path in _UNLOGGED_PATHS and response.status_code < 400:
                return response

            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            log_json(
                logger,
                level,
                "request",
                method=method,
                path=path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
                client_ip=client_ip,
            )
            return response
