"""Chat repository layer."""

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session, aliased

from models import Conversation, ConversationParticipant, Message, Profile


def get_conversation(db: Session, *, conversation_id: str) -> Optional[Conversation]:
    return db.query(Conversation).filter(Conversation.id == conversation_id).first()


def is_participant(db: Session, *, conversation_id: str, user_id: str) -> bool:
    return (
        db.query(ConversationParticipant)
        .filter(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.user_id == user_id,
        )
        .first()
        is not None
    )


def list_participant_ids(db: Session, *, conversation_id: str) -> List[str]:
    rows = (
        db.query(ConversationParticipant.user_id)
        .filter(ConversationParticipant.conversation_id == conversation_id)
        .all()
    )
    return [row[0] for row in rows]


def list_conversation_ids_for_user(db: Session, *, user_id: str) -> List[str]:
    rows = (
        db.query(ConversationParticipant.conversation_id)
        .filter(ConversationParticipant.user_id == user_id)
        .all()
    )
    return [row[0] for row in rows]


def list_conversations_by_ids(db: Session, *, conversation_ids: Iterable[str]) -> List[Conversation]:
    conversation_ids = list(conversation_ids)
    if not conversation_ids:
        return []
    return db.query(Conversation).filter(Conversation.id.in_(conversation_ids)).all()


def list_other_participants(
    db: Session, *, conversation_ids: Iterable[str], user_id: str
) -> List[Tuple[str, str]]:
    """(conversation_id, other user_id) pairs."""
    conversation_ids = list(conversation_ids)
    if not conversation_ids:
        return []
    return (
        db.query(ConversationParticipant.conversation_id, ConversationParticipant.user_id)
        .filter(
            ConversationParticipant.conversation_id.in_(conversation_ids),
            ConversationParticipant.user_id != user_id,
        )
        .all()
    )


def get_profile(db: Session, *, profile_id: str) -> Optional[Profile]:
    return db.query(Profile).filter(Profile.id == profile_id).first()


def list_profiles_by_ids(db: Session, *, profile_ids: Iterable[str]) -> List[Profile]:
    profile_ids = list(set(profile_ids))
    if not profile_ids:
        return []
    return db.query(Profile).filter(Profile.id.in_(profile_ids)).all()


def list_last_messages(db: Session, *, conversation_ids: Iterable[str]) -> Dict[str, Message]:
    """Latest message per conversation by (created_at, id)."""
    conversation_ids = list(conversation_ids)
    if not conversation_ids:
        return {}
    ranked = (
        db.query(
            Message.id.label("message_id"),
            func.row_number()
            .over(
                partition_by=Message.conversation_id,
                order_by=(Message.created_at.desc(), Message.id.desc()),
            )
            .label("rank"),
        )
        .filter(Message.conversation_id.in_(conversation_ids))
        .subquery()
    )
    rows = (
        db.query(Message)
        .join(ranked, Message.id == ranked.c.message_id)
        .filter(ranked.c.rank == 1)
        .all()
    )
    return {message.conversation_id: message for message in rows}


def list_unread_counts(
    db: Session, *, conversation_ids: Iterable[str], user_id: str
) -> Dict[str, int]:
    """Messages authored by someone else that ``user_id`` has not read."""
    conversation_ids = list(conversation_ids)
    if not conversation_ids:
        return {}
    rows = (
        db.query(Message.conversation_id, func.count(Message.id))
        .filter(
            Message.conversation_id.in_(conversation_ids),
            Message.user_id != user_id,
            Message.read_at.is_(None),
        )
        .group_by(Message.conversation_id)
        .all()
    )
    return {conversation_id: count for conversation_id, count in rows}


def list_messages(db: Session, *, conversation_id: str) -> List[Message]:
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .all()
    )


def get_message(db: Session, *, message_id: int) -> Optional[Message]:
    return db.query(Message).filter(Message.id == message_id).first()


def mark_conversation_read(
    db: Session, *, conversation_id: str, reader_id: str, read_at: datetime
) -> int:
    # The sender predicate lives in the UPDATE so a caller can never mark their own rows
    return (
        db.query(Message)
        .filter(
            Message.conversation_id == conversation_id,
            Message.user_id != reader_id,
            Message.read_at.is_(None),
        )
        .update({Message.read_at: read_at}, synchronize_session=False)
    )


def mark_message_read(db: Session, *, message_id: int, reader_id: str, read_at: datetime) -> int:
    return (
        db.query(Message)
        .filter(
            Message.id == message_id,
            Message.user_id != reader_id,
            Message.read_at.is_(None),
        )
        .update({Message.read_at: read_at}, synchronize_session=False)
    )


def create_message(
    db: Session,
    *,
    conversation_id: str,
    user_id: str,
    content: str,
    media_url: Optional[str],
    media_type: Optional[str],
    location_data: Optional[dict],
) -> Message:
    message = Message(
        conversation_id=conversation_id,
        user_id=user_id,
        content=content,
        media_url=media_url,
        media_type=media_type,
        location_data=location_data,
        created_at=datetime.utcnow(),
    )
    db.add(message)
    return message


def find_conversation_between(db: Session, *, user_a: str, user_b: str) -> Optional[Conversation]:
    other = aliased(ConversationParticipant)
    return (
        db.query(Conversation)
        .join(ConversationParticipant, ConversationParticipant.conversation_id == Conversation.id)
        .join(other, other.conversation_id == Conversation.id)
        .filter(ConversationParticipant.user_id == user_a, other.user_id == user_b)
        .order_by(Conversation.created_at.asc())
        .first()
    )


def create_conversation(db: Session, *, user_a: str, user_b: str) -> Conversation:
    now = datetime.utcnow()
    conversation = Conversation(created_at=now, updated_at=now)
    conversation.participants = [
        ConversationParticipant(user_id=user_a, joined_at=now),
        ConversationParticipant(user_id=user_b, joined_at=now),
    ]
    db.add(conversation)
    return conversation


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def search_profiles_by_name(
    db: Session, *, query: str, exclude_id: str, limit: int
) -> List[Profile]:
    q = db.query(Profile).filter(Profile.id != exclude_id, Profile.full_name.isnot(None))
    if query:
        q = q.filter(Profile.full_name.ilike(f"%{_escape_like(query)}%", escape="\\"))
    return q.order_by(Profile.full_name.asc()).limit(limit).all()
