"""
Utilities for validating Supabase JWT tokens and synchronizing users.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

import requests
from jose import jwt, JWTError
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.core.config import get_supabase_url, get_supabase_jwt_secret
from app.core.database import get_db
from app.core.errors import UnauthorizedError, BillingError
from app.models.user import User

logger = logging.getLogger(__name__)

# Security scheme for FastAPI
security = HTTPBearer(auto_error=False)

# Cache for JWKS (public keys)
_jwks_cache = None

# amr methods that count as strong authentication for step-up checks
STRONG_AUTH_METHODS = frozenset({"password", "otp", "totp", "webauthn", "oauth", "sso/saml"})


class AuthConfigError(BillingError):
    code = "AUTH_MISCONFIGURED"


@dataclass
class AuthSession:
    """
    The authenticated caller of a request.

    Wraps the verified Supabase JWT claims; the step-up gate reads the last
    strong authentication from the `amr` claim.
    """
    user_id: str
    email: str | None = None
    claims: dict = field(default_factory=dict)

    def get_last_strong_auth_at(self) -> datetime | None:
        """
        Most recent strong authentication recorded in the token.

        Returns:
            datetime | None: None if the token carries no strong method

        Raises:
            ValueError: If the amr claim is malformed
        """
        amr = self.claims.get("amr")
        if amr is None:
            return None
        if not isinstance(amr, list):
            raise ValueError("amr claim must be a list")

        latest = None
        for entry in amr:
            if not isinstance(entry, dict):
                raise ValueError("amr entries must be objects")
            if entry.get("method") not in STRONG_AUTH_METHODS:
                continue
            timestamp = entry.get("timestamp")
            if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
                raise ValueError(f"amr timestamp for {entry.get('method')} is not numeric")
            if latest is None or timestamp > latest:
                latest = timestamp

        if latest is None:
            return None
        return datetime.fromtimestamp(latest, tz=timezone.utc)


def get_jwks():
    """
    Fetch public keys (JWKS) from Supabase for validating ES256 tokens.

    Caches the keys to avoid repeated network calls.
    """
    global _jwks_cache

    if _jwks_cache is not None:
        return _jwks_cache

    supabase_url = get_supabase_url()
    if not supabase_url:
        return None

    try:
        jwks_url = f"{supabase_url}/auth/v1/.well-known/jwks.json"
        response = requests.get(jwks_url, timeout=5)
        response.raise_for_status()
        _jwks_cache = response.json()
        return _jwks_cache
    except requests.RequestException as e:
        logger.warning(f"[AUTH] Failed to fetch JWKS from Supabase: {e}")
        return None


def decode_supabase_jwt(token: str) -> dict:
    """
    Decode and validate a JWT issued by Supabase Auth.

    Supports both HS256 (legacy) and ES256 (current) algorithms.

    Args:
        token: JWT token string

    Returns:
        dict: Token payload with fields like 'sub', 'email', 'amr', etc.

    Raises:
        UnauthorizedError: If token is invalid or expired
        AuthConfigError: If no verification key is available
    """
    jwt_secret = get_supabase_jwt_secret()

    # Try HS256 first (legacy, for compatibility)
    if jwt_secret:
        try:
            return jwt.decode(
                token,
                jwt_secret,
                algorithms=["HS256"],
                options={"verify_aud": False}
            )
        except JWTError as e:
            logger.debug(f"[AUTH] HS256 validation failed: {e}, trying ES256...")

    try:
        # Get header without validation to extract 'kid'
        unverified_header = jwt.get_unverified_header(token)
        algorithm = unverified_header.get("alg", "ES256")
        kid = unverified_header.get("kid")

        if algorithm == "HS256":
            raise UnauthorizedError("Invalid authentication token")

        jwks = get_jwks()
        if not jwks:
            raise AuthConfigError("Could not fetch JWKS from Supabase")

        public_key = next((key for key in jwks.get("keys", []) if key.get("kid") == kid), None)
        if not public_key:
            raise UnauthorizedError(f"Could not find public key for kid: {kid}")

        return jwt.decode(
            token,
            public_key,
            algorithms=[algorithm],
            options={"verify_aud": False}
        )

    except JWTError as e:
        raise UnauthorizedError(f"Invalid authentication token: {str(e)}")


async def get_or_create_user_from_jwt(payload: dict, db: AsyncSession) -> User:
    """
    Fetch or create user from JWT payload (lazy sync).

    Args:
        payload: Decoded JWT payload
        db: Database session

    Returns:
        User: User instance

    Raises:
        UnauthorizedError: If payload is missing the subject
    """
    supabase_user_id = payload.get("sub")
    email = payload.get("email")

    if not supabase_user_id:
        raise UnauthorizedError("Invalid token payload: missing sub")

    result = await db.execute(select(User).where(User.id == supabase_user_id))
    user = result.scalar_one_or_none()

    # If not found, create (lazy sync)
    if not user:
        user = User(id=supabase_user_id, email=email)
        db.add(user)
        await db.commit()
        await db.refresh(user)
        logger.info(f"[AUTH] User created via lazy sync: {supabase_user_id}")

    return user


async def get_current_session(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> AuthSession:
    """
    Dependency to get the authenticated session from a Supabase JWT.

    Args:
        credentials: Credentials from Authorization header
        db: Database session

    Returns:
        AuthSession: Verified caller

    Raises:
        UnauthorizedError: If the token is missing or invalid
    """
    if not credentials:
        raise UnauthorizedError("Authentication required")

    payload = decode_supabase_jwt(credentials.credentials)
    user = await get_or_create_user_from_jwt(payload, db)

    return AuthSession(user_id=user.id, email=user.email, claims=payload)
