"""Chat schemas."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from config import CHAT_MAX_MESSAGE_LENGTH


class LocationPayload(BaseModel):
    latitude: float = Field(..., ge=-90, le=90, example=48.1372)
    longitude: float = Field(..., ge=-180, le=180, example=11.5756)


class SendMessageRequest(BaseModel):
    content: Optional[str] = Field(
        None, max_length=CHAT_MAX_MESSAGE_LENGTH, example="Hallo @[Jane Doe](abc) "
    )
    media_url: Optional[str] = Field(None, example="https://cdn.example.com/u/1/photo.jpg")
    media_type: Optional[str] = Field(
        None, pattern="^(image|video|file|gif)$", example="image"
    )
    gif_title: Optional[str] = Field(None, max_length=200, example="thumbs up")
    location: Optional[LocationPayload] = None

    class Config:
        json_schema_extra = {
            "example": {"content": "Wann ist die nächste Fahrstunde?"}
        }


class ShareProfileRequest(BaseModel):
    profile_id: str = Field(..., min_length=1)


class TypingRequest(BaseModel):
    event: str = Field(..., pattern="^(TYPING_START|TYPING_STOP)$", example="TYPING_START")


class CreateConversationRequest(BaseModel):
    peer_id: str = Field(..., min_length=1)


class SenderProfile(BaseModel):
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None


class MessageOut(BaseModel):
    id: int
    conversation_id: str
    user_id: str
    content: str
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    location_data: Optional[Dict[str, Any]] = None
    read_at: Optional[str] = None
    created_at: str
    sender_profile: Optional[SenderProfile] = None
    content_kind: str
    rendered: Dict[str, Any]


class HistoryResponse(BaseModel):
    conversation_id: str
    messages: List[MessageOut]
    marked_read: int


class MarkReadResponse(BaseModel):
    message_id: int
    read_at: Optional[str] = None
    updated: bool


class OtherUser(BaseModel):
    id: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    last_seen: Optional[str] = None


class LastMessage(BaseModel):
    id: int
    user_id: str
    preview: str
    content_kind: str
    created_at: str


class ConversationSummary(BaseModel):
    conversation_id: str
    other_user: OtherUser
    last_message: Optional[LastMessage] = None
    last_message_at: Optional[str] = None
    unread_count: int = 0
    updated_at: str
    is_pinned: bool = False


class ConversationListResponse(BaseModel):
    conversations: List[ConversationSummary]


class ConversationResponse(BaseModel):
    conversation_id: str
    created: bool
    other_user: OtherUser


class MentionCandidateOut(BaseModel):
    id: str
    full_name: str
    avatar_url: Optional[str] = None


class MentionSearchResponse(BaseModel):
    query: str
    candidates: List[MentionCandidateOut]


class PresenceSnapshotResponse(BaseModel):
    scope: str
    online: List[str]
    available: bool = True


class PeerStatusResponse(BaseModel):
    user_id: str
    online: bool
    last_seen: Optional[str] = None
    status_text: str
