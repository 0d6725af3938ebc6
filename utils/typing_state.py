"""Typing indicator state: sender-side debounce and receiver-side expiry."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from config import TYPING_DEBOUNCE_SECONDS, TYPING_INDICATOR_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

TYPING_START = "TYPING_START"
TYPING_STOP = "TYPING_STOP"

IDLE = "idle"
TYPING = "typing"


class TypingDebouncer:
    """
    Sender state machine for one composer.

    idle -> typing on the first non-empty input (emits TYPING_START once).
    Each further input pushes the TYPING_STOP deadline back by ``delay``.
    Empty input emits TYPING_STOP immediately. ``cancel()`` drops the pending
    stop without emitting it (the send path does this).
    """

    def __init__(
        self,
        emit: Callable[[str], Awaitable[None]],
        *,
        delay: float = TYPING_DEBOUNCE_SECONDS,
    ):
        self._emit = emit
        self.delay = delay
        self.state = IDLE
        self._timer: Optional[asyncio.TimerHandle] = None
        self._pending: set = set()

    @property
    def has_pending_stop(self) -> bool:
        return self._timer is not None

    async def on_input(self, text: str) -> None:
        if text:
            if self.state == IDLE:
                self.state = TYPING
                await self._send(TYPING_START)
            self._schedule_stop()
            return

        self._cancel_timer()
        if self.state == TYPING:
            self.state = IDLE
            await self._send(TYPING_STOP)

    def cancel(self) -> None:
        self._cancel_timer()
        self.state = IDLE

    async def aclose(self) -> None:
        """Cancel the timer and wait for stops already in flight."""
        self.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    def _schedule_stop(self) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.delay, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        if self.state != TYPING:
            return
        self.state = IDLE
        task = asyncio.ensure_future(self._send(TYPING_STOP))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, event: str) -> None:
        try:
            await self._emit(event)
        except Exception as exc:
            # Typing broadcasts are best-effort
            logger.warning(f"Typing broadcast {event} failed: {exc}")


class TypingIndicator:
    """
    Receiver view of one counterpart's typing state.

    A start signal expires after ``timeout`` seconds of silence even if the
    matching stop never arrives.
    """

    def __init__(
        self,
        *,
        timeout: float = TYPING_INDICATOR_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout = timeout
        self._clock = clock
        self._typing = False
        self._last_signal: Optional[float] = None

    def on_event(self, event: str) -> None:
        if event == TYPING_START:
            self._typing = True
            self._last_signal = self._clock()
        elif event == TYPING_STOP:
            self._typing = False
            self._last_signal = self._clock()

    def clear(self) -> None:
        self._typing = False

    @property
    def is_typing(self) -> bool:
        if not self._typing or self._last_signal is None:
            return False
        return self._clock() - self._last_signal <= self.timeout

    def expired(self) -> bool:
        """True once a start signal has gone stale without a stop."""
        return self._typing and not self.is_typing
