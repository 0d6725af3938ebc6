import asyncio
import logging
import time
from typing import Optional, Set

import redis.asyncio as redis

from config import REDIS_URL

logger = logging.getLogger(__name__)

GLOBAL_PRESENCE_SCOPE = "online-users"

_redis_client: Optional[redis.Redis] = None
_redis_lock = asyncio.Lock()


async def get_chat_redis() -> Optional[redis.Redis]:
    """Create or return cached Redis connection for chat features."""
    global _redis_client

    if _redis_client:
        return _redis_client

    async with _redis_lock:
        if _redis_client:
            return _redis_client
        try:
            _redis_client = redis.from_url(REDIS_URL, decode_responses=True)
            logger.info("Chat Redis client initialized")
        except Exception as exc:
            logger.error(f"Failed to initialize chat Redis client: {exc}")
            _redis_client = None
    return _redis_client


async def close_chat_redis() -> None:
    global _redis_client
    client, _redis_client = _redis_client, None
    if client is not None:
        await client.aclose()


def personal_presence_scope(profile_id: str) -> str:
    return f"{GLOBAL_PRESENCE_SCOPE}:{profile_id}"


def _presence_key(scope: str) -> str:
    return f"chat:presence:{scope}"


async def presence_snapshot(scope: str, *, client=None) -> Optional[Set[str]]:
    """
    Return every member of ``scope`` whose heartbeat has not expired.
    Expired members are pruned. Returns None if Redis is unavailable.
    """
    client = client or await get_chat_redis()
    if not client:
        return None

    key = _presence_key(scope)
    now = time.time()
    try:
        members = await client.hgetall(key)
        expired = [
            user_id for user_id, expires_at in members.items() if float(expires_at) <= now
        ]
        if expired:
            await client.hdel(key, *expired)
        return {user_id for user_id in members if user_id not in expired}
    except Exception as exc:
        logger.warning(f"Chat Redis presence snapshot error for {scope}: {exc}")
        return None


async def join_presence(
    scope: str, user_id: str, ttl_seconds: int, *, client=None
) -> Optional[Set[str]]:
    """Add or refresh ``user_id`` in ``scope`` and return the new snapshot."""
    client = client or await get_chat_redis()
    if not client:
        return None

    key = _presence_key(scope)
    try:
        await client.hset(key, user_id, str(time.time() + ttl_seconds))
        # The hash outlives members a little so a quiet scope still cleans itself up
        await client.expire(key, ttl_seconds * 2)
    except Exception as exc:
        logger.warning(f"Chat Redis presence join error for {scope}: {exc}")
        return None
    return await presence_snapshot(scope, client=client)


async def leave_presence(scope: str, user_id: str, *, client=None) -> Optional[Set[str]]:
    """Remove ``user_id`` from ``scope`` and return the new snapshot."""
    client = client or await get_chat_redis()
    if not client:
        return None

    try:
        await client.hdel(_presence_key(scope), user_id)
    except Exception as exc:
        logger.warning(f"Chat Redis presence leave error for {scope}: {exc}")
        return None
    return await presence_snapshot(scope, client=client)


def _typing_key(conversation_id: str, user_id: str) -> str:
    return f"chat:typing:{conversation_id}:{user_id}"


async def set_typing_flag(conversation_id: str, user_id: str, ttl_seconds: float, *, client=None) -> None:
    """Remember that ``user_id`` is typing so late joiners can be told."""
    client = client or await get_chat_redis()
    if not client:
        return
    try:
        await client.set(
            _typing_key(conversation_id, user_id), "1", px=int(ttl_seconds * 1000)
        )
    except Exception as exc:
        logger.warning(f"Chat Redis typing flag error: {exc}")


async def clear_typing_flag(conversation_id: str, user_id: str, *, client=None) -> None:
    """Remove cached typing flag for ``user_id`` in a conversation."""
    client = client or await get_chat_redis()
    if not client:
        return
    try:
        await client.delete(_typing_key(conversation_id, user_id))
    except Exception as exc:
        logger.debug(f"Chat Redis typing cleanup failed: {exc}")


async def is_typing(conversation_id: str, user_id: str, *, client=None) -> bool:
    client = client or await get_chat_redis()
    if not client:
        return False
    try:
        return bool(await client.exists(_typing_key(conversation_id, user_id)))
    except Exception as exc:
        logger.debug(f"Chat Redis typing lookup failed: {exc}")
        return False
