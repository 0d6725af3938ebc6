import json
import logging
import time
from typing import AsyncGenerator, Optional, Tuple

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse

from config import SSE_ALLOW_QUERY_TOKEN, SSE_HEARTBEAT_SECONDS
from db import get_db_context
from routers.dependencies import bearer_token, get_user_from_token

from . import service as chat_service
from .feed import ConversationFeed, ConversationListFeed

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["Chat Stream"])

POLL_SECONDS = 1.0


def sse_format(data: dict, event: Optional[str] = None, id_: Optional[str] = None) -> bytes:
    """Build an SSE frame."""
    chunks = []
    if event:
        chunks.append(f"event: {event}\n")
    if id_:
        chunks.append(f"id: {id_}\n")
    payload = json.dumps(data, separators=(",", ":"), default=str)
    chunks.append(f"data: {payload}\n\n")
    return "".join(chunks).encode("utf-8")


def sse_retry(ms: int = 5000) -> bytes:
    """Generate SSE retry hint frame."""
    return f"retry: {ms}\n\n".encode("utf-8")


def _stream_token(request: Request, token_param: Optional[str]) -> Optional[str]:
    token = bearer_token(request)
    if token:
        return token
    if token_param and SSE_ALLOW_QUERY_TOKEN:
        return token_param
    if token_param:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Use Authorization header for SSE",
        )
    return None


def _load_conversation_context(token: Optional[str], conversation_id: str) -> Tuple[str, str]:
    with get_db_context() as db:
        user = get_user_from_token(token, db)
        peer_id = chat_service.get_peer_id(db, current_user=user, conversation_id=conversation_id)
        return user.id, peer_id


def _load_viewer_id(token: Optional[str]) -> str:
    with get_db_context() as db:
        chat_service.ensure_chat_enabled()
        return get_user_from_token(token, db).id


async def _pump(request: Request, feed) -> AsyncGenerator[bytes, None]:
    """Initial events, then feed events interleaved with heartbeats until disconnect."""
    yield sse_retry(5000)
    try:
        for event, data in await feed.open():
            yield sse_format(data, event=event)

        last_heartbeat = time.monotonic()
        while True:
            if await request.is_disconnected():
                break

            for event, data in await feed.next_events(timeout=POLL_SECONDS):
                yield sse_format(data, event=event)

            if time.monotonic() - last_heartbeat >= SSE_HEARTBEAT_SECONDS:
                await feed.heartbeat()
                yield sse_format({"type": "heartbeat"}, event="heartbeat")
                last_heartbeat = time.monotonic()
    finally:
        await feed.close()


@router.get("/conversations/stream")
async def conversation_list_stream(
    request: Request,
    token: Optional[str] = Query(default=None),
    search: Optional[str] = Query(default=None, max_length=100),
):
    """
    Conversation list updates. Every message change anywhere refreshes the
    list (fully, or one entry at a time in incremental mode).
    """
    viewer_id = await run_in_threadpool(_load_viewer_id, _stream_token(request, token))
    feed = ConversationListFeed(viewer_id=viewer_id, search=search)
    logger.info(f"Conversation list stream opened: user={viewer_id} mode={feed.mode}")
    return StreamingResponse(
        _pump(request, feed),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/conversations/{conversation_id}/stream")
async def conversation_stream(
    conversation_id: str,
    request: Request,
    token: Optional[str] = Query(default=None),
):
    """
    Live feed for one open conversation: ``message``, ``read``, ``typing``,
    ``presence`` and ``heartbeat`` events.
    """
    viewer_id, peer_id = await run_in_threadpool(
        _load_conversation_context, _stream_token(request, token), conversation_id
    )
    feed = ConversationFeed(conversation_id=conversation_id, viewer_id=viewer_id, peer_id=peer_id)
    logger.info(f"Conversation stream opened: user={viewer_id} conversation={conversation_id}")
    return StreamingResponse(
        _pump(request, feed),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
