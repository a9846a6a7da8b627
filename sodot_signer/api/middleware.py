"""Request tracing and throttling of vertex-bound requests for the signer API."""

from __future__ import annotations

import math
import re
import time
import uuid
from collections import OrderedDict, deque
from collections.abc import Callable

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

log = structlog.get_logger()

# Paths that are not logged or counted per request
_UNTRACKED_PATHS = ("/health", "/metrics")

_CREATE_ROUTE = "/v1/sessions"
_SIGN_ROUTE = re.compile(r"^/v1/sessions/(?P<session_id>[^/]+)/sign$")

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
}


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tag each request with an ID and record its outcome.

    The ID comes from ``X-Request-ID`` or is generated, is bound into
    structlog contextvars (vertex calls forward it), and is echoed back in
    the response along with the security headers.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.monotonic()
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            for header, value in _SECURITY_HEADERS.items():
                response.headers.setdefault(header, value)
            path = request.url.path
            if path not in _UNTRACKED_PATHS:
                from sodot_signer.api.metrics import REQUEST_COUNT, REQUEST_LATENCY

                duration_s = time.monotonic() - start
                # Session ids would explode label cardinality
                endpoint = getattr(request.scope.get("route"), "path", path)
                REQUEST_COUNT.labels(
                    method=request.method,
                    endpoint=endpoint,
                    status=response.status_code,
                ).inc()
                REQUEST_LATENCY.labels(endpoint=endpoint).observe(duration_s)
                log.info(
                    "request",
                    method=request.method,
                    path=path,
                    status=response.status_code,
                    duration_ms=round(duration_s * 1000, 1),
                )
            return response
        finally:
            structlog.contextvars.unbind_contextvars("request_id")


def vertex_work_key(request: Request) -> str | None:
    """Throttling key for a request that starts an MPC round, else ``None``.

    Signing is budgeted per session so one busy chain cannot starve the
    others; session creation (keygen plus pubkey derivation) per client.
    """
    if request.method != "POST":
        return None
    path = request.url.path
    match = _SIGN_ROUTE.match(path)
    if match:
        return f"session:{match['session_id']}"
    if path == _CREATE_ROUTE:
        return f"client:{request.client.host if request.client else 'unknown'}"
    return None


class SlidingWindowLimiter:
    """At most ``limit`` admissions per key within any ``window`` seconds.

    Keys are kept in least-recently-used order and the oldest is forgotten
    once ``max_keys`` are tracked.
    """

    def __init__(self, limit: int, window: float, max_keys: int = 10_000) -> None:
        self._limit = limit
        self._window = window
        self._max_keys = max_keys
        self._admitted: OrderedDict[str, deque[float]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._admitted)

    def acquire(self, key: str) -> float:
        """Admit one request for ``key``; returns 0.0, or seconds until a slot frees."""
        now = time.monotonic()
        stamps = self._admitted.get(key)
        if stamps is None:
            if len(self._admitted) >= self._max_keys:
                self._admitted.popitem(last=False)
            stamps = self._admitted[key] = deque()
        else:
            self._admitted.move_to_end(key)
        while stamps and now - stamps[0] >= self._window:
            stamps.popleft()
        if len(stamps) >= self._limit:
            return self._window - (now - stamps[0])
        stamps.append(now)
        return 0.0


class SigningRateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: object, limiter: SlidingWindowLimiter) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._limiter = limiter

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        key = vertex_work_key(request)
        if key is not None:
            wait = self._limiter.acquire(key)
            if wait > 0:
                from sodot_signer.api.metrics import RATE_LIMIT_REJECTIONS

                RATE_LIMIT_REJECTIONS.inc()
                log.warning("rate_limited", key=key, retry_after_s=round(wait, 1))
                return JSONResponse(
                    status_code=429,
                    content={"detail": "Too many signing requests"},
                    headers={"Retry-After": str(max(1, math.ceil(wait)))},
                )
        return await call_next(request)


def get_cors_origins(env_value: str = "") -> list[str]:
    """Parse ``CORS_ORIGINS``; an empty value allows any origin."""
    if not env_value:
        log.warning("cors_wildcard", msg="CORS_ORIGINS not set, allowing any origin")
        return ["*"]
    return [o.strip() for o in env_value.split(",") if o.strip()]
