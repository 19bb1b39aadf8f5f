"""
Custom middleware for request tracking and quota headers.
"""
import logging
import time
import uuid

from fastapi import Request

logger = logging.getLogger(__name__)


async def request_id_middleware(request: Request, call_next):
    """
    Tag every request with an id and log its outcome.

    An incoming X-Request-ID is reused so ids can be followed across services.
    """
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id
    started = time.perf_counter()

    response = await call_next(request)

    elapsed_ms = int((time.perf_counter() - started) * 1000)
    response.headers["X-Request-ID"] = request_id
    logger.info(f"[REQUEST] {request.method} {request.url.path} -> {response.status_code} ({elapsed_ms}ms) id={request_id}")
    return response


async def quota_headers_middleware(request: Request, call_next):
    """
    Add quota headers to responses of metered endpoints.

    Handlers that reserve usage store the reservation on
    request.state.usage_reservation; denied reservations already carry the
    headers on their 429 response.

    Headers added:
    - X-RateLimit-Limit: Quota for the current window
    - X-RateLimit-Remaining: Units left in the window
    - X-RateLimit-Reset: Unix timestamp when the window resets
    """
    response = await call_next(request)

    reservation = getattr(request.state, "usage_reservation", None)
    if reservation is not None and "X-RateLimit-Limit" not in response.headers:
        response.headers["X-RateLimit-Limit"] = str(reservation.limit)
        response.headers["X-RateLimit-Remaining"] = str(reservation.remaining)
        response.headers["X-RateLimit-Reset"] = str(int(reservation.reset_at.timestamp()))

    return response
