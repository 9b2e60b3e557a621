"""
Bearer token verification for tokens issued by the auth provider.

Tokens are HS256 JWTs signed with AUTH_JWT_SECRET. The user id is carried in
the "user_id" claim, falling back to the standard "sub" claim.
"""

import logging
import os
from datetime import timedelta
from typing import Optional, Dict

import jwt

from league_night.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60


def _secret() -> str:
    return os.getenv("AUTH_JWT_SECRET", "dev-secret-change-me")


def _audience() -> Optional[str]:
    return os.getenv("AUTH_JWT_AUDIENCE") or None


def create_access_token(data: Dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a signed access token. Used by tests and local tooling.

    Args:
        data: Claims to encode (should include "user_id" or "sub")
        expires_delta: Optional lifetime, defaults to ACCESS_TOKEN_EXPIRE_MINUTES

    Returns:
        Encoded JWT string
    """
    to_encode = data.copy()
    expire = utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode["exp"] = expire
    audience = _audience()
    if audience:
        to_encode["aud"] = audience
    return jwt.encode(to_encode, _secret(), algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> Optional[Dict]:
    """
    Verify and decode a bearer token.

    Args:
        token: Encoded JWT

    Returns:
        Decoded claims, or None if the token is invalid or expired
    """
    audience = _audience()
    try:
        return jwt.decode(
            token,
            _secret(),
            algorithms=[JWT_ALGORITHM],
            audience=audience,
            options={"verify_aud": audience is not None},
        )
    except jwt.PyJWTError as e:
        logger.debug(f"Token verification failed: {e}")
        return None


def get_user_id(payload: Dict) -> Optional[int]:
    """Extract the integer user id from decoded claims."""
    raw = payload.get("user_id", payload.get("sub"))
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None
