"""
API Middleware

- RequestLoggingMiddleware: binds request_id/user_id into structlog
  contextvars so every log line of the request carries them
- RateLimitMiddleware: sliding window per shopper (X-User-Id) or client address
- SecurityHeadersMiddleware
"""

import asyncio
import time
import uuid
from collections import deque
from typing import Callable, Deque, Dict, Tuple

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
import structlog

logger = structlog.get_logger(__name__)

# Health checks and metric scrapes are not worth a log line per request
QUIET_PATHS = ("/health/live", "/health/ready", "/metrics")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log all requests with timing information"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        quiet = request.url.path in QUIET_PATHS

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            user_id=request.headers.get("X-User-Id"),
        )
        if not quiet:
            logger.info(
                "request_started",
                method=request.method,
                path=request.url.path,
                client=request.client.host if request.client else None,
            )

        try:
            response = await call_next(request)
        except Exception:
            logger.exception("request_failed", method=request.method, path=request.url.path)
            raise

        duration_ms = (time.perf_counter() - started) * 1000
        if response.status_code >= 500:
            log = logger.error
        elif response.status_code >= 400:
            log = logger.warning
        else:
            log = logger.debug if quiet else logger.info
        log(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )

        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
        response.headers["X-Request-ID"] = request_id
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window rate limiter.

    Authenticated shoppers are limited by user id so a cart-hammering client
    behind a shared address does not starve everyone else. Payment provider
    webhooks are exempt: providers retry on 429, and a burst of redeliveries
    must still reach the dedup gate.
    """

    def __init__(
        self,
        app,
        max_requests: int = 600,
        window_seconds: int = 60,
        exempt_prefixes: Tuple[str, ...] = ("/webhooks", "/health", "/metrics"),
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(app)
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.exempt_prefixes = exempt_prefixes
        self.clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._last_sweep = clock()
        self._lock = asyncio.Lock()

    @property
    def bucket_count(self) -> int:
        return len(self._hits)

    def _prune(self, bucket: str, now: float) -> Deque[float]:
        hits = self._hits.get(bucket)
        if hits is None:
            return deque()
        while hits and now - hits[0] >= self.window_seconds:
            hits.popleft()
        if not hits:
            del self._hits[bucket]
        return hits

    def _sweep_idle(self, now: float) -> None:
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        for bucket in list(self._hits):
            self._prune(bucket, now)

    def _bucket(self, request: Request) -> str:
        user_id = request.headers.get("X-User-Id")
        if user_id:
            return f"user:{user_id}"
        return f"addr:{request.client.host if request.client else 'unknown'}"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path.startswith(self.exempt_prefixes):
            return await call_next(request)

        bucket = self._bucket(request)
        now = self.clock()
        async with self._lock:
            self._sweep_idle(now)
            hits = self._prune(bucket, now)
            if len(hits) >= self.max_requests:
                logger.warning("rate_limit_exceeded", security_event=True, bucket=bucket, requests=len(hits))
                return JSONResponse(
                    status_code=429,
                    content={"message": "Rate limit exceeded"},
                    headers={
                        "Retry-After": str(int(self.window_seconds - (now - hits[0])) + 1),
                        "X-RateLimit-Limit": str(self.max_requests),
                        "X-RateLimit-Remaining": "0",
                    },
                )
            hits.append(now)
            self._hits[bucket] = hits
            remaining = self.max_requests - len(hits)

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""

    HEADERS = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
        "Referrer-Policy": "no-referrer",
        # Carts and orders are per-user and change on every edit
        "Cache-Control": "no-store",
    }

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        for name, value in self.HEADERS.items():
            response.headers.setdefault(name, value)
        return response
