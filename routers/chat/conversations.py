from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from db import get_db
from models import Profile
from routers.dependencies import get_current_user

from .schemas import ConversationListResponse, ConversationResponse, CreateConversationRequest
from .service import get_or_create_conversation as service_get_or_create_conversation
from .service import list_conversations as service_list_conversations

router = APIRouter(prefix="/chat", tags=["Chat Conversations"])


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(
    search: Optional[str] = Query(None, max_length=100, description="Filter by participant name"),
    db: Session = Depends(get_db),
    current_user: Profile = Depends(get_current_user),
):
    """
    List my conversations, most recently active first.
    The support conversation, if configured, is pinned to the top.
    """
    return service_list_conversations(db, current_user=current_user, search=search)


@router.post("/conversations", response_model=ConversationResponse)
async def create_conversation(
    request: CreateConversationRequest,
    db: Session = Depends(get_db),
    current_user: Profile = Depends(get_current_user),
):
    """Return the conversation with ``peer_id``, creating it on first contact."""
    return service_get_or_create_conversation(
        db, current_user=current_user, peer_id=request.peer_id
    )
