"""
Bearer token authentication for the clip job API.

Callers present a Supabase-style HS256 JWT. The ``sub`` claim identifies the
owner of every job the caller creates or reads.
"""

import logging
from typing import Optional

import jwt
from fastapi import Header, HTTPException, status

from viralclips.config import get_settings
from viralclips.errors import AuthError

logger = logging.getLogger(__name__)


def decode_owner_id(token: str) -> str:
    """
    Verify a bearer token and return its owner id.

    Args:
        token: Encoded JWT

    Returns:
        The ``sub`` claim

    Raises:
        AuthError: If the token is missing, invalid or expired
    """
    settings = get_settings()
    if not settings.auth_jwt_secret:
        logger.error("AUTH_JWT_SECRET not configured, rejecting request")
        raise AuthError()

    try:
        payload = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=["HS256"],
            audience=settings.auth_jwt_audience,
            options={"verify_aud": settings.auth_jwt_audience is not None},
        )
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired token")
        raise AuthError("Session expired. Please sign in again.")
    except jwt.InvalidTokenError as e:
        logger.warning(f"Rejected invalid token: {e}")
        raise AuthError()

    owner_id = payload.get("sub")
    if not owner_id:
        logger.warning("Token has no sub claim")
        raise AuthError()
    return str(owner_id)


async def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> str:
    """
    FastAPI dependency resolving the caller's owner id.

    Raises:
        HTTPException: 401 if the bearer token is missing or invalid
    """
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        logger.warning("Request missing bearer token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=AuthError().to_dict(),
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return decode_owner_id(token.strip())
    except AuthError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.to_dict(),
            headers={"WWW-Authenticate": "Bearer"},
        )
