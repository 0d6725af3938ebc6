import uuid
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from db import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


class MediaType(PyEnum):
    IMAGE = "image"
    VIDEO = "video"
    FILE = "file"
    GIF = "gif"
    PROFILE = "profile"


# =================================
#  Profiles Table
# =================================
class Profile(Base):
    __tablename__ = "profiles"

    # Same id as the identity provider's subject claim
    id = Column(String(36), primary_key=True, default=generate_uuid)
    full_name = Column(String, nullable=True, index=True)
    avatar_url = Column(String, nullable=True)
    last_seen = Column(DateTime, nullable=True)
    locale = Column(String(8), nullable=False, default="de")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


# =================================
#  Conversations Table
# =================================
class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    participants = relationship(
        "ConversationParticipant", back_populates="conversation", cascade="all, delete-orphan"
    )


# =================================
#  Conversation Participants Table
# =================================
class ConversationParticipant(Base):
    __tablename__ = "conversation_participants"

    conversation_id = Column(
        String(36), ForeignKey("conversations.id"), primary_key=True
    )
    user_id = Column(String(36), ForeignKey("profiles.id"), primary_key=True, index=True)
    joined_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    conversation = relationship("Conversation", back_populates="participants")
    profile = relationship("Profile")


# =================================
#  Messages Table
# =================================
class Message(Base):
    __tablename__ = "messages"

    # Autoincrement id doubles as the insertion-order tie breaker
    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(
        String(36), ForeignKey("conversations.id"), nullable=False, index=True
    )
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    content = Column(Text, nullable=False)
    media_url = Column(String, nullable=True)
    media_type = Column(String(16), nullable=True)  # image/video/file/gif/profile
    location_data = Column(JSON, nullable=True)  # {"latitude": .., "longitude": ..}
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    sender = relationship("Profile")

    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )
