from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from db import get_db
from models import Profile
from routers.dependencies import get_current_user

from .schemas import TypingRequest
from .service import broadcast_typing as service_broadcast_typing

router = APIRouter(prefix="/chat", tags=["Chat Typing"])


@router.post("/conversations/{conversation_id}/typing", status_code=status.HTTP_202_ACCEPTED)
async def send_typing(
    conversation_id: str,
    request: TypingRequest,
    db: Session = Depends(get_db),
    current_user: Profile = Depends(get_current_user),
):
    """Broadcast TYPING_START / TYPING_STOP. Delivery is best-effort."""
    return await service_broadcast_typing(
        db, current_user=current_user, conversation_id=conversation_id, event=request.event
    )
