"""Chat service layer."""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from fastapi import BackgroundTasks, HTTPException, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError

from config import (
    CHAT_ENABLED,
    MENTION_RESULT_LIMIT,
    PRESENCE_ENABLED,
    PRESENCE_TTL_SECONDS,
    PROFILE_SEARCH_MIN_CHARS,
    SUPPORT_PROFILE_ID,
    TYPING_INDICATOR_TIMEOUT_SECONDS,
)
from db import get_db_context
from utils import chat_redis
from utils.chat_redis import GLOBAL_PRESENCE_SCOPE, personal_presence_scope
from utils.conversation_index import filter_conversations, sort_conversations
from utils.logging_helpers import log_error, log_info, log_warning
from utils.message_content import (
    LOCATION_PLACEHOLDER,
    ContentKind,
    encode_profile_share,
    gif_placeholder,
    parse_content,
    preview_text,
    render_content,
)
from utils.message_sanitizer import sanitize_message
from utils.presence_state import describe_last_seen
from utils.pusher_client import (
    NEW_MESSAGE_EVENT,
    conversation_pusher_channel,
    publish_chat_message_sync,
)
from utils.redis_pubsub import (
    MESSAGE_CHANGES_CHANNEL,
    conversation_channel,
    presence_channel,
    publish_best_effort,
    typing_channel,
)
from utils.typing_state import TYPING_START, TYPING_STOP

from . import repository as chat_repository

logger = logging.getLogger(__name__)

PROFILE_SEARCH_LIMIT = 10


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def ensure_chat_enabled():
    if not CHAT_ENABLED:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Chat is disabled")


def _get_conversation_for_participant(db, *, current_user, conversation_id: str):
    conversation = chat_repository.get_conversation(db, conversation_id=conversation_id)
    if not conversation:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    if not chat_repository.is_participant(
        db, conversation_id=conversation_id, user_id=current_user.id
    ):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")
    return conversation


def _profile_data(profile) -> Dict[str, Optional[str]]:
    return {"full_name": profile.full_name, "avatar_url": profile.avatar_url}


def _batch_get_sender_profiles(db, user_ids: Iterable[str]) -> Dict[str, Dict[str, Optional[str]]]:
    """One query for every distinct sender in a batch."""
    profiles = chat_repository.list_profiles_by_ids(db, profile_ids=user_ids)
    return {profile.id: _profile_data(profile) for profile in profiles}


def serialize_message(message, sender_profile: Optional[Dict[str, Optional[str]]] = None) -> dict:
    content = parse_content(
        message.content, message.media_url, message.media_type, message.location_data
    )
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "user_id": message.user_id,
        "content": message.content,
        "media_url": message.media_url,
        "media_type": message.media_type,
        "location_data": message.location_data,
        "read_at": _isoformat(message.read_at),
        "created_at": _isoformat(message.created_at),
        "sender_profile": sender_profile,
        "content_kind": content.kind.value,
        "rendered": render_content(content),
    }


async def _publish_change(change_type: str, conversation_id: str, participant_ids: List[str]):
    await publish_best_effort(
        MESSAGE_CHANGES_CHANNEL,
        {
            "type": change_type,
            "conversation_id": conversation_id,
            "participant_ids": participant_ids,
        },
    )


# --- History and read state ---


async def load_history(db, *, current_user, conversation_id: str):
    ensure_chat_enabled()
    _get_conversation_for_participant(db, current_user=current_user, conversation_id=conversation_id)

    marked = 0
    read_at = datetime.utcnow()
    try:
        marked = chat_repository.mark_conversation_read(
            db, conversation_id=conversation_id, reader_id=current_user.id, read_at=read_at
        )
        db.commit()
    except SQLAlchemyError as e:
        # Read receipts are best-effort; the history itself still loads
        db.rollback()
        marked = 0
        log_warning(
            logger,
            f"Mark-read failed while loading history: {e}",
            current_user.id,
            conversation_id=conversation_id,
        )

    messages = chat_repository.list_messages(db, conversation_id=conversation_id)
    profile_cache = _batch_get_sender_profiles(db, {msg.user_id for msg in messages})

    result = [
        serialize_message(msg, profile_cache.get(msg.user_id, {"full_name": None, "avatar_url": None}))
        for msg in messages
    ]

    if marked:
        participant_ids = chat_repository.list_participant_ids(db, conversation_id=conversation_id)
        await publish_best_effort(
            conversation_channel(conversation_id),
            {
                "type": "READ",
                "conversation_id": conversation_id,
                "reader_id": current_user.id,
                "read_at": read_at.isoformat(),
            },
        )
        await _publish_change("UPDATE", conversation_id, participant_ids)

    return {"conversation_id": conversation_id, "messages": result, "marked_read": marked}


async def mark_message_read(db, *, current_user, message_id: int):
    ensure_chat_enabled()
    message = chat_repository.get_message(db, message_id=message_id)
    if not message:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    if not chat_repository.is_participant(
        db, conversation_id=message.conversation_id, user_id=current_user.id
    ):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")

    read_at = datetime.utcnow()
    try:
        updated = chat_repository.mark_message_read(
            db, message_id=message_id, reader_id=current_user.id, read_at=read_at
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        updated = 0
        log_warning(
            logger,
            f"Mark-read failed: {e}",
            current_user.id,
            message_id=message_id,
        )
    db.refresh(message)

    if updated:
        participant_ids = chat_repository.list_participant_ids(
            db, conversation_id=message.conversation_id
        )
        await publish_best_effort(
            conversation_channel(message.conversation_id),
            {
                "type": "READ",
                "conversation_id": message.conversation_id,
                "reader_id": current_user.id,
                "message_id": message.id,
                "read_at": _isoformat(message.read_at),
            },
        )
        await _publish_change("UPDATE", message.conversation_id, participant_ids)

    return {
        "message_id": message.id,
        "read_at": _isoformat(message.read_at),
        "updated": bool(updated),
    }


def mark_live_message_read(message_id: int, reader_id: str) -> Optional[datetime]:
    """
    Mark one live-delivered row read from a stream, outside any request session.

    Returns the ``read_at`` written, or None when nothing changed or the write failed.
    """
    read_at = datetime.utcnow()
    try:
        with get_db_context() as db:
            updated = chat_repository.mark_message_read(
                db, message_id=message_id, reader_id=reader_id, read_at=read_at
            )
            db.commit()
    except SQLAlchemyError as e:
        logger.warning(f"Live mark-read failed for message {message_id}: {e}")
        return None
    return read_at if updated else None


def load_sender_profile(user_id: str) -> Dict[str, Optional[str]]:
    with get_db_context() as db:
        profile = chat_repository.get_profile(db, profile_id=user_id)
        if not profile:
            return {"full_name": None, "avatar_url": None}
        return _profile_data(profile)


# --- Sending ---


async def _store_and_publish(
    db,
    *,
    current_user,
    conversation,
    content: str,
    media_url: Optional[str],
    media_type: Optional[str],
    location_data: Optional[dict],
    background_tasks: BackgroundTasks,
):
    try:
        message = chat_repository.create_message(
            db,
            conversation_id=conversation.id,
            user_id=current_user.id,
            content=content,
            media_url=media_url,
            media_type=media_type,
            location_data=location_data,
        )
        conversation.updated_at = message.created_at
        db.commit()
        db.refresh(message)
    except SQLAlchemyError as e:
        db.rollback()
        log_error(
            logger,
            f"Failed to store message: {e}",
            current_user.id,
            exc_info=True,
            conversation_id=conversation.id,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to send message"
        )

    log_info(
        logger,
        "Chat message stored",
        current_user.id,
        conversation_id=conversation.id,
        message_id=message.id,
        media_type=media_type,
    )

    # A landed message ends the sender's typing state for everyone watching
    await chat_redis.clear_typing_flag(conversation.id, current_user.id)
    await publish_best_effort(
        typing_channel(conversation.id),
        {
            "type": TYPING_STOP,
            "user_id": current_user.id,
            "user_name": current_user.full_name,
        },
    )

    payload = serialize_message(message)
    await publish_best_effort(
        conversation_channel(conversation.id),
        {"type": "INSERT", "conversation_id": conversation.id, "message": payload},
    )
    participant_ids = chat_repository.list_participant_ids(db, conversation_id=conversation.id)
    await _publish_change("INSERT", conversation.id, participant_ids)

    background_tasks.add_task(
        publish_chat_message_sync,
        conversation_pusher_channel(conversation.id),
        NEW_MESSAGE_EVENT,
        payload,
    )

    payload["sender_profile"] = _profile_data(current_user)
    return payload


async def send_message(
    db, *, current_user, conversation_id: str, request, background_tasks: BackgroundTasks
):
    ensure_chat_enabled()
    conversation = _get_conversation_for_participant(
        db, current_user=current_user, conversation_id=conversation_id
    )

    text = sanitize_message(request.content or "")
    media_url = request.media_url
    media_type = request.media_type
    location_data = None

    if media_type and not media_url:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="media_url is required for media messages")
    if media_url and not media_type:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="media_type is required for media messages")

    if request.location is not None:
        location_data = {
            "latitude": request.location.latitude,
            "longitude": request.location.longitude,
        }
        content = text or LOCATION_PLACEHOLDER
    elif media_type == ContentKind.GIF.value:
        content = text or gif_placeholder(request.gif_title)
    elif media_url:
        content = text
    else:
        if not text:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message cannot be empty")
        content = text

    return await _store_and_publish(
        db,
        current_user=current_user,
        conversation=conversation,
        content=content,
        media_url=media_url,
        media_type=media_type,
        location_data=location_data,
        background_tasks=background_tasks,
    )


async def share_profile(
    db, *, current_user, conversation_id: str, profile_id: str, background_tasks: BackgroundTasks
):
    ensure_chat_enabled()
    conversation = _get_conversation_for_participant(
        db, current_user=current_user, conversation_id=conversation_id
    )
    shared = chat_repository.get_profile(db, profile_id=profile_id)
    if not shared:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")

    return await _store_and_publish(
        db,
        current_user=current_user,
        conversation=conversation,
        content=encode_profile_share(shared.id, shared.full_name, shared.avatar_url),
        media_url=None,
        media_type=ContentKind.PROFILE.value,
        location_data=None,
        background_tasks=background_tasks,
    )


# --- Conversation list ---


def _other_user_data(profile) -> dict:
    return {
        "id": profile.id,
        "full_name": profile.full_name,
        "avatar_url": profile.avatar_url,
        "last_seen": _isoformat(profile.last_seen),
    }


def build_conversation_summaries(
    db, *, user_id: str, conversation_ids: Optional[Iterable[str]] = None
) -> List[dict]:
    """
    Unsorted list entries for ``user_id``. Restricting ``conversation_ids``
    rebuilds only those entries; ids the user is not part of are skipped.
    """
    my_ids = chat_repository.list_conversation_ids_for_user(db, user_id=user_id)
    if conversation_ids is not None:
        wanted = set(conversation_ids)
        my_ids = [cid for cid in my_ids if cid in wanted]
    if not my_ids:
        return []

    conversations = chat_repository.list_conversations_by_ids(db, conversation_ids=my_ids)
    peer_map = dict(
        chat_repository.list_other_participants(db, conversation_ids=my_ids, user_id=user_id)
    )
    peers = chat_repository.list_profiles_by_ids(db, profile_ids=peer_map.values())
    peer_profiles = {profile.id: profile for profile in peers}
    last_messages = chat_repository.list_last_messages(db, conversation_ids=my_ids)
    unread_counts = chat_repository.list_unread_counts(db, conversation_ids=my_ids, user_id=user_id)

    result = []
    for conv in conversations:
        peer = peer_profiles.get(peer_map.get(conv.id))
        if not peer:
            continue

        last_message = None
        msg = last_messages.get(conv.id)
        if msg:
            content = parse_content(msg.content, msg.media_url, msg.media_type, msg.location_data)
            last_message = {
                "id": msg.id,
                "user_id": msg.user_id,
                "preview": preview_text(content),
                "content_kind": content.kind.value,
                "created_at": _isoformat(msg.created_at),
            }

        result.append(
            {
                "conversation_id": conv.id,
                "other_user": _other_user_data(peer),
                "last_message": last_message,
                "last_message_at": last_message["created_at"] if last_message else None,
                "unread_count": unread_counts.get(conv.id, 0),
                "updated_at": _isoformat(conv.updated_at),
                "is_pinned": bool(SUPPORT_PROFILE_ID) and peer.id == SUPPORT_PROFILE_ID,
            }
        )
    return result


def list_conversations(db, *, current_user, search: Optional[str] = None):
    ensure_chat_enabled()
    summaries = build_conversation_summaries(db, user_id=current_user.id)
    summaries = filter_conversations(summaries, search)
    return {"conversations": sort_conversations(summaries, SUPPORT_PROFILE_ID)}


def compute_conversation_list(user_id: str, conversation_ids: Optional[Iterable[str]] = None) -> List[dict]:
    """Session-owning variant used by streams."""
    with get_db_context() as db:
        return build_conversation_summaries(db, user_id=user_id, conversation_ids=conversation_ids)


def get_or_create_conversation(db, *, current_user, peer_id: str):
    ensure_chat_enabled()
    if peer_id == current_user.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot start a conversation with yourself"
        )
    peer = chat_repository.get_profile(db, profile_id=peer_id)
    if not peer:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")

    conversation = chat_repository.find_conversation_between(
        db, user_a=current_user.id, user_b=peer_id
    )
    created = False
    if not conversation:
        try:
            conversation = chat_repository.create_conversation(
                db, user_a=current_user.id, user_b=peer_id
            )
            db.commit()
            db.refresh(conversation)
            created = True
        except SQLAlchemyError as e:
            db.rollback()
            log_error(logger, f"Failed to create conversation: {e}", current_user.id, peer_id=peer_id)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to start conversation",
            )
        log_info(logger, "Conversation created", current_user.id, conversation_id=conversation.id)

    return {
        "conversation_id": conversation.id,
        "created": created,
        "other_user": _other_user_data(peer),
    }


# --- Profile search ---


def _candidate(profile) -> dict:
    return {"id": profile.id, "full_name": profile.full_name, "avatar_url": profile.avatar_url}


def search_mentions(db, *, current_user, query: str = ""):
    """Autocomplete after "@". An empty query lists the first candidates by name."""
    ensure_chat_enabled()
    query = (query or "").strip()
    profiles = chat_repository.search_profiles_by_name(
        db, query=query, exclude_id=current_user.id, limit=MENTION_RESULT_LIMIT
    )
    return {"query": query, "candidates": [_candidate(p) for p in profiles]}


def search_profiles(db, *, current_user, query: str = ""):
    ensure_chat_enabled()
    query = (query or "").strip()
    if len(query) < PROFILE_SEARCH_MIN_CHARS:
        return {"query": query, "candidates": []}
    profiles = chat_repository.search_profiles_by_name(
        db, query=query, exclude_id=current_user.id, limit=PROFILE_SEARCH_LIMIT
    )
    return {"query": query, "candidates": [_candidate(p) for p in profiles]}


# --- Typing ---


async def broadcast_typing(db, *, current_user, conversation_id: str, event: str):
    ensure_chat_enabled()
    _get_conversation_for_participant(db, current_user=current_user, conversation_id=conversation_id)

    if event == TYPING_START:
        await chat_redis.set_typing_flag(
            conversation_id, current_user.id, TYPING_INDICATOR_TIMEOUT_SECONDS
        )
    else:
        await chat_redis.clear_typing_flag(conversation_id, current_user.id)

    published = await publish_best_effort(
        typing_channel(conversation_id),
        {"type": event, "user_id": current_user.id, "user_name": current_user.full_name},
    )
    if not published:
        log_warning(logger, f"Typing broadcast dropped: {event}", current_user.id, conversation_id=conversation_id)
    return {"status": "accepted", "event": event, "delivered": published}


async def peer_is_typing(conversation_id: str, user_id: str) -> bool:
    """Whether a typing flag is still live for a viewer who joins late."""
    return await chat_redis.is_typing(conversation_id, user_id)


# --- Presence ---


def _check_join_scope(scope: str, user_id: str):
    if scope not in (GLOBAL_PRESENCE_SCOPE, personal_presence_scope(user_id)):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot join this presence scope")


async def _publish_snapshot(scope: str, members: Set[str]):
    await publish_best_effort(
        presence_channel(scope),
        {"type": "SYNC", "scope": scope, "online": sorted(members)},
    )


async def presence_snapshot(scope: str) -> Optional[Set[str]]:
    """Current members of ``scope``, or None when presence storage is unavailable."""
    if not PRESENCE_ENABLED:
        return set()
    return await chat_redis.presence_snapshot(scope)


async def join_presence(scope: str, user_id: str) -> Set[str]:
    if not PRESENCE_ENABLED:
        return set()
    members = await chat_redis.join_presence(scope, user_id, PRESENCE_TTL_SECONDS)
    if members is None:
        return set()
    await _publish_snapshot(scope, members)
    return members


def stamp_last_seen(user_id: str, seen_at: Optional[datetime] = None) -> None:
    try:
        with get_db_context() as db:
            profile = chat_repository.get_profile(db, profile_id=user_id)
            if profile:
                profile.last_seen = seen_at or datetime.utcnow()
                db.commit()
    except SQLAlchemyError as e:
        logger.warning(f"Failed to stamp last_seen for {user_id}: {e}")


async def leave_presence(scope: str, user_id: str) -> Set[str]:
    if not PRESENCE_ENABLED:
        return set()
    members = await chat_redis.leave_presence(scope, user_id)
    await run_in_threadpool(stamp_last_seen, user_id)
    if members is None:
        return set()
    await _publish_snapshot(scope, members)
    return members


async def join_presence_for_user(*, current_user, scope: str):
    _check_join_scope(scope, current_user.id)
    members = await join_presence(scope, current_user.id)
    return {"scope": scope, "online": sorted(members), "available": PRESENCE_ENABLED}


async def leave_presence_for_user(*, current_user, scope: str):
    _check_join_scope(scope, current_user.id)
    members = await leave_presence(scope, current_user.id)
    return {"scope": scope, "online": sorted(members), "available": PRESENCE_ENABLED}


async def get_presence_snapshot(*, scope: str):
    members = await presence_snapshot(scope)
    if members is None:
        return {"scope": scope, "online": [], "available": False}
    return {"scope": scope, "online": sorted(members), "available": True}


def get_peer_id(db, *, current_user, conversation_id: str) -> str:
    ensure_chat_enabled()
    _get_conversation_for_participant(db, current_user=current_user, conversation_id=conversation_id)
    peer_ids = [
        pid
        for pid in chat_repository.list_participant_ids(db, conversation_id=conversation_id)
        if pid != current_user.id
    ]
    if not peer_ids:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation has no other participant")
    return peer_ids[0]


async def get_peer_status(db, *, current_user, conversation_id: str):
    peer_id = get_peer_id(db, current_user=current_user, conversation_id=conversation_id)
    peer = chat_repository.get_profile(db, profile_id=peer_id)
    if not peer:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")

    members = await presence_snapshot(personal_presence_scope(peer.id))
    online = bool(members) and peer.id in members
    return {
        "user_id": peer.id,
        "online": online,
        "last_seen": _isoformat(peer.last_seen),
        "status_text": describe_last_seen(peer.last_seen, online=online),
    }
