"""View state for one open conversation."""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from config import TYPING_INDICATOR_TIMEOUT_SECONDS
from utils.message_log import MessageLog
from utils.presence_state import PresenceTracker
from utils.typing_state import TYPING_START, TYPING_STOP, TypingIndicator

from .api import ChatApiClient, ChatApiError

logger = logging.getLogger(__name__)


class ChatSession:
    """
    History, live messages, counterpart typing and presence for one
    conversation. Acquired once per opened conversation and released with
    ``close()``, which is safe to call repeatedly.
    """

    def __init__(
        self,
        api: ChatApiClient,
        *,
        conversation_id: str,
        viewer_id: str,
        peer_id: str,
        typing_timeout: float = TYPING_INDICATOR_TIMEOUT_SECONDS,
    ):
        self.api = api
        self.conversation_id = conversation_id
        self.viewer_id = viewer_id
        self.peer_id = peer_id
        self.log = MessageLog()
        self.typing = TypingIndicator(timeout=typing_timeout)
        self.presence = PresenceTracker()
        self.error: Optional[str] = None
        self.loaded = False
        self._listener: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return self.log.messages

    @property
    def peer_typing(self) -> bool:
        return self.typing.is_typing

    @property
    def peer_online(self) -> bool:
        return self.presence.is_online(self.peer_id)

    async def load(self) -> None:
        """Fetch history once. A failure leaves ``error`` set and is not retried."""
        try:
            history = await self.api.load_history(self.conversation_id)
        except ChatApiError as e:
            self.error = e.detail or "Could not load messages"
            raise
        self.log.load_history(history)
        self.loaded = True

    def apply_event(self, event: str, data: Dict[str, Any]) -> None:
        if event == "message":
            if data.get("conversation_id", self.conversation_id) != self.conversation_id:
                return
            self.log.append(data)
            if data.get("user_id") == self.peer_id:
                self.typing.on_event(TYPING_STOP)
        elif event == "read":
            self._apply_read(data)
        elif event == "typing":
            if data.get("user_id") == self.peer_id:
                self.typing.on_event(TYPING_START if data.get("is_typing") else TYPING_STOP)
        elif event == "presence":
            if data.get("user_id") == self.peer_id:
                self.presence.apply_sync([self.peer_id] if data.get("online") else [])

    def _apply_read(self, data: Dict[str, Any]) -> None:
        if data.get("reader_id") == self.viewer_id:
            return
        read_at = data.get("read_at")
        if not read_at:
            # A receipt without a timestamp cannot fill the set-once field
            return
        message_id = data.get("message_id")
        if message_id is not None:
            self.log.mark_read(message_id, read_at)
            return
        for message in self.log:
            if message.get("user_id") == self.viewer_id:
                self.log.mark_read(message.get("id"), read_at)

    async def _listen(self) -> None:
        try:
            async for event, data in self.api.stream(self.conversation_id):
                self.apply_event(event, data)
        except ChatApiError as e:
            logger.warning(f"Conversation stream ended for {self.conversation_id}: {e.detail}")
            # Without a live feed the last snapshot says nothing
            self.presence.reset()

    async def open(self) -> "ChatSession":
        if self._closed:
            raise RuntimeError("Session already closed")
        await self.load()
        if self._listener is None:
            self._listener = asyncio.ensure_future(self._listen())
        return self

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        listener, self._listener = self._listener, None
        if listener is not None:
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass

    async def __aenter__(self) -> "ChatSession":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
