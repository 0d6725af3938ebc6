"""
Plain-text cleanup for chat messages before they are stored.

Messages are stored as text, not HTML: markup is stripped with bleach and the
entities bleach leaves behind are decoded again, so ``a < b & c`` survives
intact and escaping happens once, at render time.
"""

import html
import logging

import bleach

from config import MESSAGE_SANITIZE_ENABLED

logger = logging.getLogger(__name__)

_KEPT_WHITESPACE = frozenset("\n\t")


def _drop_control_chars(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return "".join(ch for ch in text if ch.isprintable() or ch in _KEPT_WHITESPACE)


def sanitize_message(message: str) -> str:
    """
    Strip tags and control characters from a user message.

    Mention tokens (``@[name](id)``) carry no markup and pass through unchanged.
    An empty result means the message had nothing displayable.
    """
    if not message:
        return ""
    if not MESSAGE_SANITIZE_ENABLED:
        return message.strip()

    # bleach replaces control characters with "?", so they go first
    message = _drop_control_chars(message)
    try:
        stripped = bleach.clean(message, tags=[], attributes={}, strip=True, strip_comments=True)
    except ValueError as e:
        # Leave the message to the length and emptiness checks rather than fail the send
        logger.warning(f"bleach could not parse message, keeping raw text: {e}")
        stripped = message
    else:
        stripped = html.unescape(stripped)

    return _drop_control_chars(stripped).strip()
