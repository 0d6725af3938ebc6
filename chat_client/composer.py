"""Compose box: typing signals, mention autocomplete and the send pipeline."""

import logging
from typing import Any, Dict, List, Optional

from config import TYPING_DEBOUNCE_SECONDS
from utils.mentions import (
    ActiveMention,
    MentionCandidate,
    MentionSelector,
    find_active_mention,
    insert_mention,
)
from utils.typing_state import TypingDebouncer

from .api import ChatApiClient, ChatApiError

logger = logging.getLogger(__name__)

SIGN_IN_PROMPT = "Please sign in to send messages"
SEND_FAILED_NOTICE = "Message could not be sent. Please try again."
SUGGESTIONS_FAILED_NOTICE = "Could not load suggestions"


class Composer:
    def __init__(
        self,
        api: ChatApiClient,
        *,
        conversation_id: str,
        current_user_id: Optional[str],
        debounce: float = TYPING_DEBOUNCE_SECONDS,
    ):
        self.api = api
        self.conversation_id = conversation_id
        self.current_user_id = current_user_id
        self.text = ""
        self.cursor = 0
        self.notice: Optional[str] = None
        self.selector = MentionSelector()
        self.active_mention: Optional[ActiveMention] = None
        self.typing = TypingDebouncer(self._emit_typing, delay=debounce)

    @property
    def signed_in(self) -> bool:
        return self.current_user_id is not None

    @property
    def suggestions(self) -> List[MentionCandidate]:
        return self.selector.candidates

    async def _emit_typing(self, event: str) -> None:
        await self.api.send_typing(self.conversation_id, event)

    async def on_input(self, text: str, cursor: Optional[int] = None) -> None:
        self.text = text
        self.cursor = len(text) if cursor is None else max(0, min(cursor, len(text)))
        if self.signed_in:
            await self.typing.on_input(text)
        await self._update_mention()

    async def _update_mention(self) -> None:
        active = find_active_mention(self.text, self.cursor)
        self.active_mention = active
        if active is None:
            self.selector.dismiss()
            return
        try:
            candidates = await self.api.search_mentions(active.query)
        except ChatApiError:
            self.notice = SUGGESTIONS_FAILED_NOTICE
            self.selector.dismiss()
            return
        # Ignore results for a token the user has already moved past
        if self.active_mention is active:
            self.selector.set_candidates(candidates)

    def select(self, candidate: MentionCandidate) -> None:
        if self.active_mention is None:
            return
        self.text, self.cursor = insert_mention(
            self.text, self.active_mention.start, self.cursor, candidate
        )
        self.active_mention = None
        self.selector.dismiss()

    async def on_key(self, key: str) -> bool:
        """Returns True when the key was consumed by the suggestion list."""
        handled, committed = self.selector.handle_key(key)
        if key == "Escape" and handled:
            self.active_mention = None
        if committed is not None:
            self.select(committed)
        return handled

    async def _send(self, **fields) -> Optional[Dict[str, Any]]:
        if not self.signed_in:
            self.notice = SIGN_IN_PROMPT
            return None
        self.typing.cancel()
        try:
            message = await self.api.send_message(self.conversation_id, **fields)
        except ChatApiError as e:
            logger.warning(f"Send failed in {self.conversation_id}: {e.detail}")
            self.notice = SEND_FAILED_NOTICE
            return None
        self.notice = None
        return message

    async def submit(self) -> Optional[Dict[str, Any]]:
        """Send the draft as a text message. The draft survives a failed send."""
        if not self.signed_in:
            self.notice = SIGN_IN_PROMPT
            return None
        if not self.text.strip():
            return None
        message = await self._send(content=self.text)
        if message is not None:
            self.text = ""
            self.cursor = 0
            self.active_mention = None
            self.selector.dismiss()
        return message

    async def send_media(self, url: str, media_type: str, caption: Optional[str] = None):
        return await self._send(content=caption, media_url=url, media_type=media_type)

    async def send_gif(self, url: str, title: Optional[str] = None):
        return await self._send(media_url=url, media_type="gif", gif_title=title)

    async def send_location(self, latitude: float, longitude: float):
        return await self._send(location={"latitude": latitude, "longitude": longitude})

    async def share_profile(self, profile_id: str) -> Optional[Dict[str, Any]]:
        if not self.signed_in:
            self.notice = SIGN_IN_PROMPT
            return None
        self.typing.cancel()
        try:
            message = await self.api.share_profile(self.conversation_id, profile_id)
        except ChatApiError as e:
            logger.warning(f"Profile share failed in {self.conversation_id}: {e.detail}")
            self.notice = SEND_FAILED_NOTICE
            return None
        self.notice = None
        return message

    async def aclose(self) -> None:
        await self.typing.aclose()
