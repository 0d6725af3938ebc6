from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from db import get_db
from models import Profile
from routers.dependencies import get_current_user

from .schemas import (
    HistoryResponse,
    MarkReadResponse,
    MessageOut,
    SendMessageRequest,
    ShareProfileRequest,
)
from .service import load_history as service_load_history
from .service import mark_message_read as service_mark_message_read
from .service import send_message as service_send_message
from .service import share_profile as service_share_profile

router = APIRouter(prefix="/chat", tags=["Chat Messages"])


@router.get("/conversations/{conversation_id}/messages", response_model=HistoryResponse)
async def get_messages(
    conversation_id: str,
    db: Session = Depends(get_db),
    current_user: Profile = Depends(get_current_user),
):
    """
    Full history in creation order.
    Marks every unread message from the other participant as read.
    """
    return await service_load_history(
        db, current_user=current_user, conversation_id=conversation_id
    )


@router.post("/conversations/{conversation_id}/messages", response_model=MessageOut)
async def send_message(
    conversation_id: str,
    request: SendMessageRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: Profile = Depends(get_current_user),
):
    """Send text, media, a GIF or a location. Exactly one message row per call."""
    return await service_send_message(
        db,
        current_user=current_user,
        conversation_id=conversation_id,
        request=request,
        background_tasks=background_tasks,
    )


@router.post("/conversations/{conversation_id}/share-profile", response_model=MessageOut)
async def share_profile(
    conversation_id: str,
    request: ShareProfileRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: Profile = Depends(get_current_user),
):
    return await service_share_profile(
        db,
        current_user=current_user,
        conversation_id=conversation_id,
        profile_id=request.profile_id,
        background_tasks=background_tasks,
    )


@router.post("/messages/{message_id}/read", response_model=MarkReadResponse)
async def mark_read(
    message_id: int,
    db: Session = Depends(get_db),
    current_user: Profile = Depends(get_current_user),
):
    """Set read_at once. Own messages and already-read messages are left untouched."""
    return await service_mark_message_read(db, current_user=current_user, message_id=message_id)
