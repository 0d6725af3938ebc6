"""Async client for the chat API with composer and conversation view state."""

from .api import ChatApiClient, ChatApiError, iter_sse_events
from .composer import Composer
from .session import ChatSession

__all__ = ["ChatApiClient", "ChatApiError", "ChatSession", "Composer", "iter_sse_events"]
