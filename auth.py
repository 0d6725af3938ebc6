import logging

import jwt
from fastapi import HTTPException

from config import AUTH_JWT_AUDIENCE, AUTH_JWT_LEEWAY, AUTH_JWT_SECRET

logger = logging.getLogger(__name__)

ALGORITHMS = ["HS256"]


def validate_access_token(token: str) -> dict:
    """
    Validate an access token issued by the hosted identity provider.

    Args:
        token (str): Bearer token from the Authorization header

    Returns:
        dict: ``{"userId", "email", "name", "avatar_url"}`` taken from the claims

    Raises:
        HTTPException: 401 if the token is invalid, expired or has no subject
    """
    if not AUTH_JWT_SECRET:
        logger.error("AUTH_JWT_SECRET is not configured, rejecting token")
        raise HTTPException(status_code=401, detail="Sign in to use chat")

    try:
        claims = jwt.decode(
            token,
            AUTH_JWT_SECRET,
            algorithms=ALGORITHMS,
            audience=AUTH_JWT_AUDIENCE,
            leeway=AUTH_JWT_LEEWAY,
        )
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired access token")
        raise HTTPException(status_code=401, detail="Session expired, sign in again")
    except jwt.InvalidTokenError as e:
        logger.warning(f"Access token validation failed: {e}")
        raise HTTPException(status_code=401, detail="Sign in to use chat")

    user_id = claims.get("sub")
    if not user_id:
        logger.error("Access token has no subject claim")
        raise HTTPException(status_code=401, detail="Invalid token: missing user ID")

    metadata = claims.get("user_metadata") or {}
    return {
        "userId": str(user_id),
        "email": claims.get("email"),
        "name": metadata.get("full_name") or claims.get("name"),
        "avatar_url": metadata.get("avatar_url"),
    }
