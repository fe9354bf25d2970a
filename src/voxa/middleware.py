"""HTTP middleware applied to the whole API surface."""

from __future__ import annotations

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp

from .auth import client_address
from .services.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


class APIRateLimitMiddleware(BaseHTTPMiddleware):
    """Throttle every request under ``path_prefix`` per client address.

    Runs ahead of authentication, so the key is always the caller's address.
    The limiter is read from ``app.state.api_rate_limiter`` on each request.
    """

    def __init__(self, app: ASGIApp, *, path_prefix: str = "/api") -> None:
        super().__init__(app)
        self._path_prefix = path_prefix

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method == "OPTIONS" or not request.url.path.startswith(self._path_prefix):
            return await call_next(request)

        limiter: RateLimiter | None = getattr(request.app.state, "api_rate_limiter", None)
        if limiter is None:
            return await call_next(request)

        key = f"api:{client_address(request) or 'anonymous'}"
        decision = await limiter.check(key)
        if not decision.allowed:
            logger.info("API rate limit exceeded for %s", key)
            return JSONResponse(
                status_code=429,
                content={
                    "error": "Too many API requests",
                    "message": "Please wait before making more requests.",
                    "retryAfter": decision.retry_after,
                },
                headers={"Retry-After": str(decision.retry_after)},
            )

        response = await call_next(request)
        response.headers["RateLimit-Limit"] = str(decision.limit)
        response.headers["RateLimit-Remaining"] = str(decision.remaining)
        return response


__all__ = ["APIRateLimitMiddleware"]
