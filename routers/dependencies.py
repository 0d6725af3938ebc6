import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status

from auth import validate_access_token
from db import get_db
from models import Profile

logger = logging.getLogger(__name__)


def bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("authorization") or request.headers.get("Authorization")
    if not auth_header or not auth_header.lower().startswith("bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None


def _profile_for_claims(db, user_info: dict) -> Profile:
    profile = db.query(Profile).filter(Profile.id == user_info["userId"]).first()
    if not profile:
        # First request from a freshly registered identity
        profile = Profile(
            id=user_info["userId"],
            full_name=user_info.get("name") or user_info.get("email"),
            avatar_url=user_info.get("avatar_url"),
        )
        db.add(profile)
        db.commit()
        db.refresh(profile)
        logger.info(f"Created profile for new identity {profile.id}")
    return profile


def get_user_from_token(token: Optional[str], db) -> Profile:
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Sign in to use chat")
    user_info = validate_access_token(token)
    return _profile_for_claims(db, user_info)


def get_current_user(request: Request, db=Depends(get_db)) -> Profile:
    """
    Extracts and validates the Bearer token. Returns the caller's Profile.
    """
    return get_user_from_token(bearer_token(request), db)


def get_optional_user(request: Request, db=Depends(get_db)) -> Optional[Profile]:
    """Like get_current_user but returns None for anonymous callers."""
    token = bearer_token(request)
    if not token:
        return None
    try:
        user_info = validate_access_token(token)
    except HTTPException:
        return None
    return _profile_for_claims(db, user_info)
