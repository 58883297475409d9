"""Rate limiter shared by the application and its routers."""

from fastapi import Request
from slowapi import Limiter

from .config import get_settings


def get_client_ip(request: Request) -> str:
    """Extract a best-effort client IP for rate limiting.

    Prefer ``X-Forwarded-For`` (first hop) if present, otherwise use the
    socket peer address. This function is used by SlowAPI to key the limiter.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client is None:
        return "unknown"
    return request.client.host


def webhook_rate_limit() -> str:
    return get_settings().webhook_rate_limit


limiter = Limiter(key_func=get_client_ip, headers_enabled=True)
