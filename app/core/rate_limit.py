"""
Coarse per-client HTTP throttling.

This is a flood guard in front of the API, keyed by caller. It is not the
quota system: plan quotas live in usage_counters and admin action limits in
admin_rate_limits, both enforced atomically in the database.
"""
import logging

from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request

from app.core.config import get_redis_url, get_api_default_rate_limit

logger = logging.getLogger(__name__)


def get_rate_limit_key(request: Request) -> str:
    """
    Custom key function for rate limiting.

    Priority:
    1. User ID stored on the request by the auth dependency
    2. IP address (fallback)

    Returns:
        str: Unique identifier for rate limiting
    """
    session = getattr(request.state, "auth_session", None)
    if session is not None:
        return f"user:{session.user_id}"

    return f"ip:{get_remote_address(request)}"


redis_url = get_redis_url()

if redis_url == "memory://":
    logger.warning("[RATE LIMIT] REDIS_URL not configured, using in-memory storage (not shared between workers)")

# Initialize limiter. Quota headers are written by quota_headers_middleware,
# so slowapi's own header injection stays off.
limiter = Limiter(
    key_func=get_rate_limit_key,
    default_limits=[get_api_default_rate_limit()],
    storage_uri=redis_url,
    strategy="fixed-window",
    headers_enabled=False,
)
