"""
Per-viewer realtime feeds.

``ConversationFeed`` follows one open conversation: live inserts, read
receipts, the counterpart's typing state and presence. ``ConversationListFeed``
keeps a viewer's conversation list current. Both own exactly one Redis
subscription for their whole lifetime and close idempotently.
"""

import logging
from typing import Dict, List, Optional, Tuple

from fastapi.concurrency import run_in_threadpool

from config import CONVERSATION_LIST_REFRESH, SUPPORT_PROFILE_ID, TYPING_INDICATOR_TIMEOUT_SECONDS
from utils.chat_redis import GLOBAL_PRESENCE_SCOPE, personal_presence_scope
from utils.conversation_index import ConversationIndex, filter_conversations, sort_conversations
from utils.presence_state import PresenceTracker
from utils.redis_pubsub import (
    MESSAGE_CHANGES_CHANNEL,
    RESUBSCRIBED_EVENT,
    ChannelSubscription,
    conversation_channel,
    presence_channel,
    typing_channel,
)
from utils.typing_state import TYPING_START, TYPING_STOP, TypingIndicator

from . import service as chat_service

logger = logging.getLogger(__name__)

FeedEvent = Tuple[str, dict]

REFRESH_FULL = "full"
REFRESH_INCREMENTAL = "incremental"


class ConversationFeed:
    def __init__(
        self,
        *,
        conversation_id: str,
        viewer_id: str,
        peer_id: str,
        subscription: Optional[ChannelSubscription] = None,
        typing_timeout: float = TYPING_INDICATOR_TIMEOUT_SECONDS,
    ):
        self.conversation_id = conversation_id
        self.viewer_id = viewer_id
        self.peer_id = peer_id
        self._message_channel = conversation_channel(conversation_id)
        self._typing_channel = typing_channel(conversation_id)
        self._peer_presence_channel = presence_channel(personal_presence_scope(peer_id))
        self.subscription = subscription or ChannelSubscription(
            [self._message_channel, self._typing_channel, self._peer_presence_channel]
        )
        self.presence = PresenceTracker()
        self.typing = TypingIndicator(timeout=typing_timeout)
        self._typing_name: Optional[str] = None
        self._sender_profiles: Dict[str, dict] = {}
        self._joined_scopes: List[str] = []
        self._closed = False

    @property
    def peer_online(self) -> bool:
        return self.presence.is_online(self.peer_id)

    def _presence_event(self) -> FeedEvent:
        return "presence", {"user_id": self.peer_id, "online": self.peer_online}

    async def _sync_peer_presence(self) -> FeedEvent:
        members = await chat_service.presence_snapshot(personal_presence_scope(self.peer_id))
        self.presence.apply_sync(members or ())
        return self._presence_event()

    async def open(self) -> List[FeedEvent]:
        """Join presence, subscribe, and return the initial events."""
        for scope in (GLOBAL_PRESENCE_SCOPE, personal_presence_scope(self.viewer_id)):
            await chat_service.join_presence(scope, self.viewer_id)
            self._joined_scopes.append(scope)
        try:
            await self.subscription.open()
        except Exception as exc:
            logger.warning(f"Live subscription unavailable for {self.conversation_id}: {exc}")
        events = [await self._sync_peer_presence()]
        if await chat_service.peer_is_typing(self.conversation_id, self.peer_id):
            self.typing.on_event(TYPING_START)
            events.append(
                ("typing", {"user_id": self.peer_id, "user_name": None, "is_typing": True})
            )
        return events

    async def heartbeat(self) -> None:
        """Refresh presence membership before it expires."""
        for scope in self._joined_scopes:
            await chat_service.join_presence(scope, self.viewer_id)

    async def _sender_profile(self, user_id: str) -> dict:
        profile = self._sender_profiles.get(user_id)
        if profile is None:
            profile = await run_in_threadpool(chat_service.load_sender_profile, user_id)
            self._sender_profiles[user_id] = profile
        return profile

    async def _on_message_event(self, payload: dict) -> Optional[FeedEvent]:
        event_type = payload.get("type")
        if event_type == "READ":
            return "read", payload
        if event_type != "INSERT":
            return None

        message = dict(payload.get("message") or {})
        if not message:
            return None
        sender_id = message.get("user_id")
        if sender_id != self.viewer_id and not message.get("read_at"):
            read_at = await run_in_threadpool(
                chat_service.mark_live_message_read, message["id"], self.viewer_id
            )
            if read_at:
                message["read_at"] = read_at.isoformat()
                await chat_service.publish_best_effort(
                    self._message_channel,
                    {
                        "type": "READ",
                        "conversation_id": self.conversation_id,
                        "reader_id": self.viewer_id,
                        "message_id": message["id"],
                        "read_at": message["read_at"],
                    },
                )
        if sender_id == self.peer_id:
            # A delivered message ends the sender's typing state
            self.typing.on_event(TYPING_STOP)
        message["sender_profile"] = await self._sender_profile(sender_id)
        return "message", message

    def _on_typing_event(self, payload: dict) -> Optional[FeedEvent]:
        if payload.get("user_id") != self.peer_id:
            return None
        event_type = payload.get("type")
        if event_type not in (TYPING_START, TYPING_STOP):
            return None
        self.typing.on_event(event_type)
        self._typing_name = payload.get("user_name")
        return "typing", {
            "user_id": self.peer_id,
            "user_name": self._typing_name,
            "is_typing": self.typing.is_typing,
        }

    def _on_presence_event(self, payload: dict) -> Optional[FeedEvent]:
        if payload.get("type") != "SYNC":
            return None
        self.presence.apply_sync(payload.get("online") or ())
        return self._presence_event()

    async def next_events(self, timeout: float = 1.0) -> List[FeedEvent]:
        events: List[FeedEvent] = []
        item = await self.subscription.get(timeout)
        if item is not None:
            channel, payload = item
            event = None
            if payload.get("type") == RESUBSCRIBED_EVENT:
                # Missed snapshots while disconnected, read the current one
                event = await self._sync_peer_presence()
            elif channel == self._message_channel:
                event = await self._on_message_event(payload)
            elif channel == self._typing_channel:
                event = self._on_typing_event(payload)
            elif channel == self._peer_presence_channel:
                event = self._on_presence_event(payload)
            if event is not None:
                events.append(event)

        if self.typing.expired():
            self.typing.clear()
            events.append(
                (
                    "typing",
                    {
                        "user_id": self.peer_id,
                        "user_name": self._typing_name,
                        "is_typing": False,
                        "expired": True,
                    },
                )
            )
        return events

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.subscription.close()
        for scope in self._joined_scopes:
            try:
                await chat_service.leave_presence(scope, self.viewer_id)
            except Exception as exc:
                logger.warning(f"Presence leave failed for {scope}: {exc}")
        self._joined_scopes = []


class ConversationListFeed:
    def __init__(
        self,
        *,
        viewer_id: str,
        search: Optional[str] = None,
        mode: str = CONVERSATION_LIST_REFRESH,
        subscription: Optional[ChannelSubscription] = None,
    ):
        self.viewer_id = viewer_id
        self.search = search
        self.mode = mode if mode in (REFRESH_FULL, REFRESH_INCREMENTAL) else REFRESH_FULL
        self._presence_channel = presence_channel(GLOBAL_PRESENCE_SCOPE)
        self.subscription = subscription or ChannelSubscription(
            [MESSAGE_CHANGES_CHANNEL, self._presence_channel]
        )
        self.index = ConversationIndex(pinned_user_id=SUPPORT_PROFILE_ID)
        self.presence = PresenceTracker()
        self._closed = False

    def _list_event(self, items: List[dict]) -> FeedEvent:
        return "conversations", {"conversations": items}

    def _presence_event(self) -> FeedEvent:
        return "presence", {"online": sorted(self.presence.online)}

    async def _recompute(self) -> FeedEvent:
        items = await run_in_threadpool(chat_service.compute_conversation_list, self.viewer_id)
        if self.mode == REFRESH_INCREMENTAL:
            self.index.replace_all(items)
            return self._list_event(self.index.snapshot(self.search))
        return self._list_event(
            sort_conversations(filter_conversations(items, self.search), SUPPORT_PROFILE_ID)
        )

    async def _refresh_one(self, conversation_id: str) -> FeedEvent:
        items = await run_in_threadpool(
            chat_service.compute_conversation_list, self.viewer_id, [conversation_id]
        )
        if items:
            for item in items:
                self.index.upsert(item)
        else:
            self.index.discard(conversation_id)
        return self._list_event(self.index.snapshot(self.search))

    async def _sync_presence(self) -> FeedEvent:
        members = await chat_service.presence_snapshot(GLOBAL_PRESENCE_SCOPE)
        self.presence.apply_sync(members or ())
        return self._presence_event()

    async def open(self) -> List[FeedEvent]:
        try:
            await self.subscription.open()
        except Exception as exc:
            logger.warning(f"Conversation list subscription unavailable: {exc}")
        return [await self._recompute(), await self._sync_presence()]

    async def heartbeat(self) -> None:
        """List viewers hold no presence membership of their own."""

    async def _on_change(self, payload: dict) -> Optional[FeedEvent]:
        if self.mode == REFRESH_FULL:
            return await self._recompute()

        conversation_id = payload.get("conversation_id")
        participant_ids = payload.get("participant_ids") or []
        if not conversation_id:
            return await self._recompute()
        if conversation_id not in self.index and self.viewer_id not in participant_ids:
            return None
        return await self._refresh_one(conversation_id)

    async def next_events(self, timeout: float = 1.0) -> List[FeedEvent]:
        item = await self.subscription.get(timeout)
        if item is None:
            return []
        channel, payload = item
        if payload.get("type") == RESUBSCRIBED_EVENT:
            return [await self._recompute(), await self._sync_presence()]
        if channel == MESSAGE_CHANGES_CHANNEL:
            event = await self._on_change(payload)
            return [event] if event else []
        if channel == self._presence_channel and payload.get("type") == "SYNC":
            self.presence.apply_sync(payload.get("online") or ())
            return [self._presence_event()]
        return []

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.subscription.close()
