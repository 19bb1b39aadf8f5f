import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import get_cors_origins
from app.core.database import engine, Base
from app.core.errors import BillingError, billing_exception_handler, sqlalchemy_exception_handler
from app.core.logging_config import setup_logging
from app.core.middleware import request_id_middleware, quota_headers_middleware
from app.api.v1.router import api_v1_router
from app.core.rate_limit import limiter

# Register every model on Base.metadata before create_all
from app.models import (  # noqa: F401
    user,
    user_subscription,
    usage_counter,
    admin_rate_limit,
    support_case,
    billing_event,
    admin_role,
)

logger = logging.getLogger(__name__)


# --- Lifespan events (startup / shutdown) ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context.

    On startup:
      - Configure logging.
      - Ensure all database tables exist (create if missing).

    On shutdown:
      - Dispose of the engine.
    """
    setup_logging()
    logger.info("[STARTUP] Starting Closet Billing API")

    async with engine.begin() as conn:
        # Create tables automatically if they do not exist
        await conn.run_sync(Base.metadata.create_all)

    yield

    await engine.dispose()
    logger.info("[SHUTDOWN] Closet Billing API stopped")


# --- FastAPI application instance ---
app = FastAPI(
    title="Closet Billing API",
    version="1.0.0",
    lifespan=lifespan,
    description="""
    Plan entitlements and usage metering for the wardrobe planner.

    ## Authentication

    Supabase JWT in the header: `Authorization: Bearer <token>`.
    Admin routes additionally require an admin role and a recent strong sign-in.

    ## Quotas

    Metered endpoints answer `429` with `limit`, `remaining` and `reset_at` in the body
    and the headers:
    - `X-RateLimit-Limit`: Quota for the window
    - `X-RateLimit-Remaining`: Units left
    - `X-RateLimit-Reset`: Unix timestamp when the window resets
    """
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_exception_handler(BillingError, billing_exception_handler)
app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
app.add_middleware(SlowAPIMiddleware)

app.middleware("http")(quota_headers_middleware)
app.middleware("http")(request_id_middleware)

# --- CORS configuration ---
# Allowed origins for browser-based clients, from CORS_ORIGINS.
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Root health / welcome endpoint ---
@app.get("/")
@limiter.limit("10/minute")
async def root(request: Request):
    """
    Simple health/welcome endpoint.

    Can be used by uptime checks or to verify that the API is running.
    """
    return {
        "message": "Welcome to the Closet Billing API",
        "status": "OK",
        "docs": "/docs",
    }


# --- Mount versioned API routers ---
# All versioned routes are exposed under /api/v1.
app.include_router(api_v1_router, prefix="/api/v1")
