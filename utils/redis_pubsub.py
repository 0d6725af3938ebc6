"""
Redis pub/sub utilities for realtime chat events.

Channels:
    chat:messages:<conversation_id>   row INSERT events for one conversation
    chat:messages:changes             every message INSERT/UPDATE, system wide
    typing-<conversation_id>          TYPING_START / TYPING_STOP broadcasts
    presence:<scope>                  full presence snapshots for a scope
"""
import asyncio
import json
import logging
from collections import Counter
from typing import Any, Dict, Iterable, Optional, Tuple

import redis.asyncio as redis

logger = logging.getLogger(__name__)

MESSAGE_CHANGES_CHANNEL = "chat:messages:changes"
RESUBSCRIBED_EVENT = "RESUBSCRIBED"

_redis: Optional[redis.Redis] = None

# channel -> number of open subscriptions in this process
ACTIVE_SUBSCRIPTIONS: Counter = Counter()


def get_redis() -> redis.Redis:
    """Get or create Redis connection singleton."""
    global _redis
    if _redis is None:
        from config import REDIS_URL

        try:
            _redis = redis.from_url(REDIS_URL, decode_responses=True)
            logger.info(f"Redis connection initialized: {REDIS_URL}")
        except Exception as e:
            logger.error(f"Failed to initialize Redis connection: {e}")
            raise
    return _redis


async def close_redis() -> None:
    """Drop the shared publish connection; the next publish reconnects."""
    global _redis
    client, _redis = _redis, None
    if client is not None:
        await client.aclose()


def conversation_channel(conversation_id: str) -> str:
    return f"chat:messages:{conversation_id}"


def typing_channel(conversation_id: str) -> str:
    return f"typing-{conversation_id}"


def presence_channel(scope: str) -> str:
    return f"presence:{scope}"


async def publish_event(channel: str, event: Dict[str, Any]) -> None:
    """
    Publish an event to a Redis channel.

    Args:
        channel: Channel name
        event: Event dictionary to publish (will be JSON-encoded)
    """
    try:
        r = get_redis()
        await r.publish(channel, json.dumps(event, default=str))
        logger.debug(f"Published event to {channel}: {event.get('type', 'unknown')}")
    except Exception as e:
        logger.error(f"Failed to publish event to {channel}: {e}")
        raise


async def publish_best_effort(channel: str, event: Dict[str, Any]) -> bool:
    """Publish without propagating failures. Returns False if the publish failed."""
    try:
        await publish_event(channel, event)
        return True
    except Exception:
        return False


class ChannelSubscription:
    """
    One Redis pub/sub connection listening on a fixed set of channels.

    ``close()`` may be called any number of times, including before ``open()``
    succeeded. Dropped connections are re-established and reported to the
    consumer as a ``RESUBSCRIBED`` event so snapshot state can be re-read.
    """

    def __init__(
        self,
        channels: Iterable[str],
        *,
        client: Optional[redis.Redis] = None,
        reconnect_delay: float = 1.0,
    ):
        self.channels = list(dict.fromkeys(channels))
        self._client = client
        self._reconnect_delay = reconnect_delay
        self._pubsub = None
        self._opened = False
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    async def open(self) -> "ChannelSubscription":
        if self._closed:
            raise RuntimeError("Subscription already closed")
        if self._opened:
            return self
        await self._subscribe()
        self._opened = True
        for channel in self.channels:
            ACTIVE_SUBSCRIPTIONS[channel] += 1
        logger.debug(f"Subscribed to Redis channels: {self.channels}")
        return self

    async def _subscribe(self) -> None:
        client = self._client or get_redis()
        self._pubsub = client.pubsub()
        await self._pubsub.subscribe(*self.channels)

    async def _reset(self) -> None:
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe()
                await self._pubsub.close()
            except Exception as exc:
                logger.debug(f"Redis pubsub cleanup failed: {exc}")
            self._pubsub = None

    async def get(self, timeout: float) -> Optional[Tuple[str, Dict[str, Any]]]:
        """
        Wait up to ``timeout`` seconds for the next event.

        Returns ``(channel, payload)`` or None on timeout.
        """
        if not self.is_open:
            await asyncio.sleep(timeout)
            return None
        try:
            msg = await self._pubsub.get_message(
                ignore_subscribe_messages=True, timeout=timeout
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(f"Redis subscription dropped for {self.channels}: {exc}")
            await self._reset()
            await asyncio.sleep(self._reconnect_delay)
            if self._closed:
                return None
            try:
                await self._subscribe()
            except Exception as resub_exc:
                logger.error(f"Redis resubscribe failed for {self.channels}: {resub_exc}")
                return None
            return "", {"type": RESUBSCRIBED_EVENT}

        if msg is None or msg.get("type") != "message":
            return None
        try:
            payload = json.loads(msg["data"])
        except (TypeError, ValueError):
            logger.warning(f"Dropping malformed event on {msg.get('channel')}")
            return None
        return msg.get("channel", ""), payload

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._opened:
            for channel in self.channels:
                ACTIVE_SUBSCRIPTIONS[channel] -= 1
                if ACTIVE_SUBSCRIPTIONS[channel] <= 0:
                    del ACTIVE_SUBSCRIPTIONS[channel]
        await self._reset()
        logger.debug(f"Unsubscribed from Redis channels: {self.channels}")

    async def __aenter__(self) -> "ChannelSubscription":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
