from __future__ import annotations

import asyncio
import ipaddress
import math
import time
from contextvars import ContextVar
from uuid import uuid4

from fastapi import Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .metrics import rate_limit_requests_total
from .settings import settings

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")


def add_cors(app):
    origins = settings.allow_origins
    if not origins:
        return
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        response = await call_next(request)
        headers = {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "no-referrer",
            "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
        }
        if request.url.scheme == "https":
            headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"
        for key, value in headers.items():
            response.headers.setdefault(key, value)
        return response


def add_security_headers(app):
    app.add_middleware(SecurityHeadersMiddleware)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Propagate or mint an X-Request-ID and bind it for the request's log lines."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        token = request_id_ctx.set(request_id)
        request.state.request_id = request_id
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response


def add_request_id_tracing(app):
    app.add_middleware(RequestIDMiddleware)


def get_request_id() -> str:
    return request_id_ctx.get("")


def _is_valid_ip(ip: str) -> bool:
    try:
        ipaddress.ip_address(ip)
    except ValueError:
        return False
    return True


def _is_trusted_proxy(ip: str) -> bool:
    trusted = settings.TRUSTED_PROXIES.strip()
    if not trusted:
        return False
    if trusted == "*":
        return True
    try:
        ip_obj = ipaddress.ip_address(ip)
    except ValueError:
        return False
    for entry in trusted.split(","):
        entry = entry.strip()
        if not entry:
            continue
        try:
            if "/" in entry:
                if ip_obj in ipaddress.ip_network(entry, strict=False):
                    return True
            elif ip_obj == ipaddress.ip_address(entry):
                return True
        except ValueError:
            continue
    return False


def client_identifier(request: Request) -> str:
    """
    Identify the calling client, honouring X-Forwarded-For only from trusted proxies.

    Used both by the HTTP token bucket and as the per-requester key for query
    throttling in the discovery guardrails.
    """
    direct = request.client.host if request.client else None
    if not direct or not _is_trusted_proxy(direct):
        return direct or "anonymous"
    forwarded = request.headers.get("x-forwarded-for")
    if not forwarded:
        return direct
    for ip in (part.strip() for part in forwarded.split(",")):
        if _is_valid_ip(ip):
            return ip
    return direct


class RateLimiter:
    """Sharded in-process token bucket keyed by client identifier."""

    def __init__(self, shards: int = 32) -> None:
        self._buckets: dict[str, dict[str, float]] = {}
        self._locks = [asyncio.Lock() for _ in range(max(1, shards))]
        self._last_cleanup = 0.0

    async def dispatch(self, request: Request, call_next):
        limit = settings.RATE_LIMIT_REQUESTS
        window = settings.RATE_LIMIT_WINDOW_SECONDS
        if not settings.RATE_LIMIT_ENABLED or limit <= 0 or window <= 0:
            return await call_next(request)

        allowed, remaining, reset_in = await self._consume(
            client_identifier(request), limit, window, time.monotonic()
        )
        if not allowed:
            rate_limit_requests_total.labels(result="throttle").inc()
            retry_after = max(1, math.ceil(reset_in))
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"detail": "Too many requests"},
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                },
            )

        response = await call_next(request)
        rate_limit_requests_total.labels(result="allow").inc()
        response.headers.setdefault("X-RateLimit-Limit", str(limit))
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
        return response

    async def _consume(self, identifier: str, limit: int, window: int, now: float):
        refill_rate = limit / window
        lock = self._locks[hash(identifier) % len(self._locks)]
        async with lock:
            bucket = self._buckets.get(identifier)
            if bucket is None:
                self._buckets[identifier] = {"tokens": float(limit - 1), "last": now}
                self._maybe_cleanup(now, window)
                return True, limit - 1, 0.0

            elapsed = max(0.0, now - bucket["last"])
            tokens = min(float(limit), bucket["tokens"] + elapsed * refill_rate)
            bucket["last"] = now
            self._maybe_cleanup(now, window)
            if tokens >= 1:
                bucket["tokens"] = tokens - 1
                return True, int(tokens - 1), 0.0
            bucket["tokens"] = tokens
            return False, 0, (1 - tokens) / refill_rate

    def reset(self) -> None:
        self._buckets.clear()
        self._last_cleanup = 0.0

    def _maybe_cleanup(self, now: float, window: int) -> None:
        if now - self._last_cleanup < window:
            return
        stale_cutoff = now - (window * 3)
        for key in [k for k, meta in self._buckets.items() if meta["last"] < stale_cutoff]:
            self._buckets.pop(key, None)
        self._last_cleanup = now


def add_rate_limiting(app):
    limiter = RateLimiter()
    app.state.rate_limiter = limiter

    @app.middleware("http")
    async def _rate_limit(request: Request, call_next):  # type: ignore[override]
        return await limiter.dispatch(request, call_next)
