import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from .models import ErrorResponse

RATE_LIMIT_MESSAGE = "Rate limit exceeded. Try again later."


@dataclass
class RateLimitState:
    limit: int
    count: int
    reset_at_ms: int

    @property
    def allowed(self) -> bool:
        return self.count <= self.limit

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at_ms / 1000)),
        }


class RateLimiter:
    """
    Simple in-memory rate limiter using a fixed window algorithm.
    Tracks requests per caller key within a time window.
    """

    def __init__(
        self,
        max_requests: int = 60,
        window_ms: int = 60_000,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.max_requests = max_requests
        self.window_ms = window_ms
        self._clock = clock or (lambda: int(time.time() * 1000))
        # identifier -> (count, window_reset_at_ms)
        self.requests: Dict[str, Tuple[int, int]] = {}
        self._next_cleanup_at = 0

    def hit(self, identifier: str) -> RateLimitState:
        """
        Count one request for the identifier and report the window state.

        Expired windows are purged at most once per window length, so idle
        identifiers do not accumulate.
        """
        now = self._clock()
        if now >= self._next_cleanup_at:
            self.cleanup()
            self._next_cleanup_at = now + self.window_ms

        count, reset_at = self.requests.get(identifier, (0, 0))

        if now > reset_at:
            # New window
            count, reset_at = 0, now + self.window_ms

        count += 1
        self.requests[identifier] = (count, reset_at)
        return RateLimitState(limit=self.max_requests, count=count, reset_at_ms=reset_at)

    def is_allowed(self, identifier: str) -> bool:
        return self.hit(identifier).allowed

    def cleanup(self) -> None:
        """Cleanup old entries to prevent memory leak"""
        now = self._clock()
        expired = [k for k, (_, reset_at) in self.requests.items() if now > reset_at]
        for k in expired:
            del self.requests[k]


def client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Global fixed-window rate limiting for every route under a path prefix.

    Rate headers are attached to all limited responses, including rejections.
    """

    def __init__(self, app, limiter: RateLimiter, prefix: str = "/api"):
        super().__init__(app)
        self.limiter = limiter
        self.prefix = prefix

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not request.url.path.startswith(self.prefix):
            return await call_next(request)

        state = self.limiter.hit(client_identifier(request))
        if not state.allowed:
            return JSONResponse(
                status_code=429,
                content=ErrorResponse(error=RATE_LIMIT_MESSAGE).model_dump(exclude_none=True),
                headers=state.headers(),
            )

        response = await call_next(request)
        response.headers.update(state.headers())
        return response
