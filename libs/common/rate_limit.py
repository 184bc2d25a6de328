"""Rate limiting for the marketplace API.

Two layers:
- slowapi ``Limiter`` decorators on HTTP endpoints (keyed by user or IP).
- ``ReferenceRateLimiter``, a per-payment-reference moving window used by the
  webhook handler to stop a single reference from being replayed in a loop.
"""

from functools import lru_cache
from typing import Callable

from fastapi import Request, Response
from limits import parse
from limits.storage import storage_from_string
from limits.strategies import MovingWindowRateLimiter
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.responses import JSONResponse

from libs.common.config import get_settings
from libs.common.middleware import client_ip


def _get_user_or_ip(request: Request) -> str:
    """
    Rate limit by user ID if authenticated, otherwise by IP.
    """
    user = getattr(request.state, "user", None)
    if user is not None:
        return f"user:{user.user_id}"
    return f"ip:{client_ip(request) or get_remote_address(request)}"


@lru_cache
def get_limiter() -> Limiter:
    """
    Create and return a cached Limiter instance.
    """
    settings = get_settings()
    return Limiter(
        key_func=_get_user_or_ip,
        default_limits=["100/minute"],
        storage_uri=settings.RATE_LIMIT_STORAGE_URI,
        strategy="fixed-window",
        enabled=settings.RATE_LIMIT_ENABLED,
    )


limiter = get_limiter()


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """
    Custom handler for rate limit exceeded errors.
    """
    retry_after = exc.detail.split("per")[0].strip() if exc.detail else "1 minute"

    return JSONResponse(
        status_code=429,
        content={
            "detail": f"Rate limit exceeded. Try again in {retry_after}.",
            "code": "RATE_LIMIT_EXCEEDED",
        },
        headers={
            "Retry-After": str(getattr(exc, "retry_after", 60)),
            "X-RateLimit-Limit": str(getattr(exc, "limit", "unknown")),
        },
    )


def payment_limit(func: Callable) -> Callable:
    """Strict limit for payment initialization endpoints (10/minute)."""
    return limiter.limit("10/minute")(func)


def verify_limit(func: Callable) -> Callable:
    """Limit for client-redirect polling of payment status (30/minute)."""
    return limiter.limit("30/minute")(func)


class ReferenceRateLimiter:
    """
    Moving-window limit keyed by payment reference.

    ``allow(reference)`` records a hit and returns False once the window is
    exhausted.
    """

    def __init__(self, rate: str = None, storage_uri: str = None):
        settings = get_settings()
        self.item = parse(rate or settings.WEBHOOK_RATE_LIMIT)
        self._limiter = MovingWindowRateLimiter(
            storage_from_string(storage_uri or "memory://")
        )

    def allow(self, reference: str) -> bool:
        return self._limiter.hit(self.item, "paystack-webhook", reference)

    def reset(self) -> None:
        self._limiter.storage.reset()
