"""
Rate Limiting Middleware
Fixed-window limiter keyed by a client fingerprint
"""

import hashlib
import logging
from typing import Dict, List, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from switchboard.resilience.rate_limiter import RateLimitConfig, RateLimiter, RateLimitResult

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDED_PATHS = ["/health", "/docs", "/redoc", "/openapi.json"]


def _get_client_identifier(request: Request) -> str:
    """
    Get unique identifier for client (IP + User-Agent)

    Args:
        request: Incoming request

    Returns:
        Client identifier hash
    """
    # Behind a proxy the first X-Forwarded-For hop is the caller
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        client_ip = forwarded_for.split(",")[0].strip()
    else:
        client_ip = request.client.host if request.client else "unknown"

    user_agent = request.headers.get("User-Agent", "")
    identifier = f"{client_ip}:{user_agent}"
    return hashlib.sha256(identifier.encode()).hexdigest()[:16]


def _rate_limit_headers(result: RateLimitResult, config: RateLimitConfig) -> Dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(config.max_requests),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(result.reset_time / 1000)),
    }
    if not result.allowed and result.retry_after is not None:
        headers["Retry-After"] = str(result.retry_after)
    return headers


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Middleware for rate limiting requests
    """

    def __init__(
        self,
        app,
        rate_limiter: Optional[RateLimiter] = None,
        excluded_paths: Optional[List[str]] = None,
        cleanup_interval: int = 1000,
    ):
        """
        Initialize rate limit middleware

        Args:
            app: ASGI app
            rate_limiter: Limiter shared with the rest of the process; a private one when omitted
            excluded_paths: Paths to exclude from rate limiting
            cleanup_interval: Drop expired client windows after this many checked requests (0 disables)
        """
        super().__init__(app)
        self.rate_limiter = rate_limiter or RateLimiter()
        self.excluded_paths = excluded_paths if excluded_paths is not None else list(DEFAULT_EXCLUDED_PATHS)
        self.cleanup_interval = cleanup_interval
        self._checked = 0

    async def dispatch(self, request: Request, call_next):
        """Process request with rate limiting"""
        if any(request.url.path.startswith(path) for path in self.excluded_paths):
            return await call_next(request)

        client_id = _get_client_identifier(request)
        config = self.rate_limiter.default_config
        result = self.rate_limiter.check(f"http:{client_id}", config)
        self._checked += 1
        if self.cleanup_interval > 0 and self._checked % self.cleanup_interval == 0:
            self.rate_limiter.cleanup()
        headers = _rate_limit_headers(result, config)

        if not result.allowed:
            logger.warning(
                f"Rate limit exceeded for {request.url.path} "
                f"from {request.client.host if request.client else 'unknown'} "
                f"(client_id: {client_id[:8]}...)"
            )
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "error": "RATE_LIMIT_EXCEEDED",
                    "detail": f"Rate limit exceeded. Try again in {result.retry_after} seconds.",
                },
                headers=headers,
            )

        response = await call_next(request)
        for key, value in headers.items():
            response.headers[key] = value
        return response
