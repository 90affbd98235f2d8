"""Security middleware for FastAPI: CORS, rate limiting.

Middleware ordering (outermost first):
1. CORS -- handles OPTIONS preflight before credential checks
2. Rate limiting -- dashboard reads only, keyed by client IP

Each app gets its own limiter on ``app.state.limiter`` and reads its limit
from ``app.state.settings``, so two apps in one process never share counters.

The webhook receiver is never rate limited: the platform retries
throttled deliveries, which only adds load.
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from limits import parse
from slowapi import Limiter
from slowapi.util import get_remote_address

from shoplens.config import Settings

logger = logging.getLogger(__name__)

_DASHBOARD_SCOPE = "dashboard"


class RateLimited(Exception):
    """Raised by the dashboard limit dependency when a window is exhausted."""

    def __init__(self, retry_after: int):
        self.retry_after = retry_after
        super().__init__(f"rate limited, retry after {retry_after}s")


def _get_client_ip(request: Request) -> str:
    """Extract client IP, trusting X-Forwarded-For only when configured."""
    settings: Settings = request.app.state.settings
    if settings.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return get_remote_address(request)


def build_limiter(settings: Settings) -> Limiter:
    """Counters live in Redis when one is configured, else in process memory."""
    return Limiter(key_func=_get_client_ip, storage_uri=settings.redis_url or "memory://")


def enforce_dashboard_limit(request: Request) -> None:
    """Route dependency: count this request against the dashboard limit."""
    limiter: Limiter = request.app.state.limiter
    settings: Settings = request.app.state.settings
    item = parse(settings.dashboard_rate_limit)
    client = _get_client_ip(request)
    if limiter.limiter.hit(item, _DASHBOARD_SCOPE, client):
        return
    reset_time, _ = limiter.limiter.get_window_stats(item, _DASHBOARD_SCOPE, client)
    raise RateLimited(max(1, int(reset_time - time.time())))


def _rate_limit_exceeded_handler(request: Request, exc: RateLimited):
    """Handle rate limit exceeded errors."""
    logger.warning("Rate limit exceeded for %s %s", request.method, request.url.path)
    return JSONResponse(
        {"error": "rate_limited", "retry_after": exc.retry_after},
        status_code=429,
        headers={"Retry-After": str(exc.retry_after)},
    )


def install_security_middleware(app: FastAPI, settings: Settings) -> None:
    """Install all security middleware on the FastAPI app.

    Call this AFTER all routes are registered but BEFORE the app starts.
    Middleware is added in reverse order (last added = outermost = runs first).
    """
    # 2. Rate limiting (dashboard routes depend on enforce_dashboard_limit)
    parse(settings.dashboard_rate_limit)  # fail at startup on a bad limit string
    app.state.limiter = build_limiter(settings)
    app.add_exception_handler(RateLimited, _rate_limit_exceeded_handler)

    # 1. CORS middleware (outermost -- runs first, handles OPTIONS preflight)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
