"""
Secondary fan-out of new chat messages through Pusher.

Mobile clients that cannot hold an SSE stream open listen on
``private-conversation-<id>``. Redis stays the source of truth for live feeds;
a Pusher failure is logged and never fails the send.
"""

import logging
from typing import Any, Dict, Optional

import pusher

from config import (
    PUSHER_APP_ID,
    PUSHER_CLUSTER,
    PUSHER_ENABLED,
    PUSHER_KEY,
    PUSHER_SECRET,
)

logger = logging.getLogger(__name__)

NEW_MESSAGE_EVENT = "new-message"

_pusher_client: Optional[pusher.Pusher] = None


def get_pusher_client() -> Optional[pusher.Pusher]:
    """Lazily build the Pusher client. None when disabled or not configured."""
    global _pusher_client

    if not PUSHER_ENABLED:
        return None
    if _pusher_client is not None:
        return _pusher_client
    if not (PUSHER_APP_ID and PUSHER_KEY and PUSHER_SECRET):
        logger.warning("PUSHER_ENABLED is set but credentials are missing")
        return None

    try:
        _pusher_client = pusher.Pusher(
            app_id=PUSHER_APP_ID,
            key=PUSHER_KEY,
            secret=PUSHER_SECRET,
            cluster=PUSHER_CLUSTER,
            ssl=True,
        )
    except Exception as e:
        logger.error(f"Failed to initialize Pusher: {e}")
        return None
    logger.info(f"Pusher client initialized for cluster {PUSHER_CLUSTER}")
    return _pusher_client


def conversation_pusher_channel(conversation_id: str) -> str:
    return f"private-conversation-{conversation_id}"


def publish_chat_message_sync(channel: str, event: str, data: Dict[str, Any]) -> bool:
    """Blocking trigger, meant for ``BackgroundTasks``. Returns False when nothing was sent."""
    client = get_pusher_client()
    if client is None:
        return False
    try:
        client.trigger(channel, event, data)
    except Exception as e:
        logger.warning(f"Pusher trigger on {channel} failed: {e}")
        return False
    return True
