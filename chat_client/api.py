"""HTTP client for the chat API."""

import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from utils.mentions import MentionCandidate

logger = logging.getLogger(__name__)

SseEvent = Tuple[str, Dict[str, Any]]


class ChatApiError(Exception):
    def __init__(self, status_code: Optional[int], detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


async def iter_sse_events(lines: AsyncIterable[str]) -> AsyncIterator[SseEvent]:
    """Parse ``event:``/``data:`` frames. Frames without data are skipped."""
    event = "message"
    data_lines: List[str] = []
    async for line in lines:
        if line == "":
            if data_lines:
                try:
                    yield event, json.loads("\n".join(data_lines))
                except ValueError:
                    logger.warning(f"Dropping malformed SSE frame for event {event}")
            event = "message"
            data_lines = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field == "event":
            event = value
        elif field == "data":
            data_lines.append(value)


class ChatApiClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout, headers=headers)
        self.signed_in = bool(token)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            try:
                detail = e.response.json().get("detail", e.response.text)
            except ValueError:
                detail = e.response.text
            logger.warning(f"Chat API {method} {url} failed: {e.response.status_code} {detail}")
            raise ChatApiError(e.response.status_code, str(detail)) from e
        except httpx.RequestError as e:
            logger.warning(f"Chat API {method} {url} unreachable: {e}")
            raise ChatApiError(None, str(e)) from e
        return response.json()

    async def load_history(self, conversation_id: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"/chat/conversations/{conversation_id}/messages")
        return data["messages"]

    async def send_message(
        self,
        conversation_id: str,
        *,
        content: Optional[str] = None,
        media_url: Optional[str] = None,
        media_type: Optional[str] = None,
        gif_title: Optional[str] = None,
        location: Optional[Dict[str, float]] = None,
    ) -> Dict[str, Any]:
        body = {
            "content": content,
            "media_url": media_url,
            "media_type": media_type,
            "gif_title": gif_title,
            "location": location,
        }
        return await self._request(
            "POST",
            f"/chat/conversations/{conversation_id}/messages",
            json={key: value for key, value in body.items() if value is not None},
        )

    async def share_profile(self, conversation_id: str, profile_id: str) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/chat/conversations/{conversation_id}/share-profile",
            json={"profile_id": profile_id},
        )

    async def mark_read(self, message_id: int) -> Dict[str, Any]:
        return await self._request("POST", f"/chat/messages/{message_id}/read")

    async def send_typing(self, conversation_id: str, event: str) -> None:
        await self._request(
            "POST", f"/chat/conversations/{conversation_id}/typing", json={"event": event}
        )

    async def search_mentions(self, query: str) -> List[MentionCandidate]:
        data = await self._request("GET", "/chat/mentions", params={"q": query})
        return [MentionCandidate(**candidate) for candidate in data["candidates"]]

    async def search_profiles(self, query: str) -> List[MentionCandidate]:
        data = await self._request("GET", "/chat/profiles/search", params={"q": query})
        return [MentionCandidate(**candidate) for candidate in data["candidates"]]

    async def list_conversations(self, search: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"search": search} if search else None
        data = await self._request("GET", "/chat/conversations", params=params)
        return data["conversations"]

    async def get_or_create_conversation(self, peer_id: str) -> Dict[str, Any]:
        return await self._request("POST", "/chat/conversations", json={"peer_id": peer_id})

    async def peer_status(self, conversation_id: str) -> Dict[str, Any]:
        return await self._request(
            "GET", f"/chat/presence/conversations/{conversation_id}/peer"
        )

    async def stream(self, conversation_id: Optional[str] = None) -> AsyncIterator[SseEvent]:
        """Events of one conversation feed, or of the conversation list when no id is given."""
        url = (
            f"/chat/conversations/{conversation_id}/stream"
            if conversation_id
            else "/chat/conversations/stream"
        )
        try:
            async with self._client.stream("GET", url, timeout=None) as response:
                response.raise_for_status()
                async for event in iter_sse_events(response.aiter_lines()):
                    yield event
        except httpx.HTTPStatusError as e:
            raise ChatApiError(e.response.status_code, "Stream rejected") from e
        except httpx.RequestError as e:
            raise ChatApiError(None, str(e)) from e
