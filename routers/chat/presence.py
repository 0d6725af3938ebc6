from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from db import get_db
from models import Profile
from routers.dependencies import get_current_user, get_optional_user

from .schemas import PeerStatusResponse, PresenceSnapshotResponse
from .service import get_peer_status as service_get_peer_status
from .service import get_presence_snapshot as service_get_presence_snapshot
from .service import join_presence_for_user as service_join_presence
from .service import leave_presence_for_user as service_leave_presence

router = APIRouter(prefix="/chat/presence", tags=["Chat Presence"])


@router.get("/{scope}", response_model=PresenceSnapshotResponse)
async def get_presence(scope: str, current_user: Optional[Profile] = Depends(get_optional_user)):
    """Full membership snapshot of a presence scope."""
    return await service_get_presence_snapshot(scope=scope)


@router.post("/{scope}/join", response_model=PresenceSnapshotResponse)
async def join_presence(scope: str, current_user: Profile = Depends(get_current_user)):
    """Join or refresh membership. Call again before the TTL runs out."""
    return await service_join_presence(current_user=current_user, scope=scope)


@router.post("/{scope}/leave", response_model=PresenceSnapshotResponse)
async def leave_presence(scope: str, current_user: Profile = Depends(get_current_user)):
    return await service_leave_presence(current_user=current_user, scope=scope)


@router.get("/conversations/{conversation_id}/peer", response_model=PeerStatusResponse)
async def get_peer_status(
    conversation_id: str,
    db: Session = Depends(get_db),
    current_user: Profile = Depends(get_current_user),
):
    """Online flag and last-seen text for the chat header."""
    return await service_get_peer_status(
        db, current_user=current_user, conversation_id=conversation_id
    )
