from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from db import get_db
from models import Profile
from routers.dependencies import get_current_user

from .schemas import MentionSearchResponse
from .service import search_mentions as service_search_mentions
from .service import search_profiles as service_search_profiles

router = APIRouter(prefix="/chat", tags=["Chat Search"])


@router.get("/mentions", response_model=MentionSearchResponse)
async def search_mentions(
    q: str = Query("", max_length=100, description="Text typed after @"),
    db: Session = Depends(get_db),
    current_user: Profile = Depends(get_current_user),
):
    return service_search_mentions(db, current_user=current_user, query=q)


@router.get("/profiles/search", response_model=MentionSearchResponse)
async def search_profiles(
    q: str = Query("", max_length=100),
    db: Session = Depends(get_db),
    current_user: Profile = Depends(get_current_user),
):
    """Profile picker for starting a conversation or sharing a profile."""
    return service_search_profiles(db, current_user=current_user, query=q)
