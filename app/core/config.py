"""
Environment-driven configuration.

Values are read from the process environment (after loading a local .env file)
at call time, so a long-running worker picks up the same settings as a test
that monkeypatches os.environ.
"""
import os

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./closet_billing.db"


def get_database_url() -> str:
    """Return the SQLAlchemy async URL for the relational store."""
    return os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL


def get_app_url() -> str:
    return os.getenv("APP_URL", "http://localhost:3000").rstrip("/")


def get_cors_origins() -> list[str]:
    raw = os.getenv("CORS_ORIGINS", "http://localhost:3000")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def get_log_level() -> str:
    return os.getenv("LOG_LEVEL", "INFO").upper()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


# --- Supabase ---

def get_supabase_url() -> str | None:
    return os.getenv("SUPABASE_URL")


def get_supabase_jwt_secret() -> str | None:
    return os.getenv("SUPABASE_JWT_SECRET")


# --- Stripe ---

def get_stripe_mode() -> str:
    """Return 'live' only when explicitly configured; everything else is 'test'."""
    mode = (os.getenv("STRIPE_MODE") or "").strip().lower()
    return "live" if mode == "live" else "test"


def get_stripe_env_value(base_name: str) -> str | None:
    """
    Resolve a Stripe setting honoring the mode suffix.

    STRIPE_SECRET_KEY_LIVE / STRIPE_SECRET_KEY_TEST win over the bare
    STRIPE_SECRET_KEY, depending on STRIPE_MODE.
    """
    suffix = "_LIVE" if get_stripe_mode() == "live" else "_TEST"
    return os.getenv(f"{base_name}{suffix}") or os.getenv(base_name)


def get_stripe_webhook_tolerance_seconds() -> int:
    return _get_int("STRIPE_WEBHOOK_TOLERANCE_SECONDS", 300)


# --- Admin security ---

def get_admin_rate_limit_max_actions() -> int:
    return _get_int("ADMIN_RATE_LIMIT_MAX_ACTIONS", 60)


def get_admin_rate_limit_window_seconds() -> int:
    return _get_int("ADMIN_RATE_LIMIT_WINDOW_SECONDS", 60)


def get_admin_low_risk_max_age_seconds() -> int:
    return _get_int("ADMIN_LOW_RISK_MAX_AGE_SECONDS", 43_200)


def get_admin_high_risk_max_age_seconds() -> int:
    return _get_int("ADMIN_HIGH_RISK_MAX_AGE_SECONDS", 900)


# --- HTTP throttling (slowapi) ---

def get_redis_url() -> str:
    return os.getenv("REDIS_URL", "memory://")


def get_api_default_rate_limit() -> str:
    return os.getenv("API_DEFAULT_RATE_LIMIT", "1000/hour")
