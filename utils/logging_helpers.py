"""
Structured log lines for chat operations.

The request id is stamped by ``core.logging.RequestIdFilter``; these helpers add
the acting profile and any ``key=value`` context (conversation, message, ...).
"""

import logging
from typing import Optional


def format_context(message: str, user_id: Optional[str] = None, **context) -> str:
    parts = [f"user_id={user_id}"] if user_id else []
    parts.extend(f"{key}={value}" for key, value in context.items() if value is not None)
    if not parts:
        return message
    return f"{message} | " + " | ".join(parts)


def log_info(logger: logging.Logger, message: str, user_id: Optional[str] = None, **context):
    logger.info(format_context(message, user_id, **context))


def log_warning(logger: logging.Logger, message: str, user_id: Optional[str] = None, **context):
    logger.warning(format_context(message, user_id, **context))


def log_error(
    logger: logging.Logger,
    message: str,
    user_id: Optional[str] = None,
    exc_info: bool = False,
    **context,
):
    """Errors may carry the active exception's traceback with ``exc_info=True``."""
    logger.error(format_context(message, user_id, **context), exc_info=exc_info)
