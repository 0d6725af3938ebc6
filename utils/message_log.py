"""In-memory message list for one open conversation."""

from typing import Any, Dict, Iterable, List, Optional


class MessageLog:
    """
    History is loaded once in creation order, then live arrivals are appended
    in arrival order. Past entries are never re-sorted. Duplicate ids (a live
    echo of a row already in history) are dropped.
    """

    def __init__(self):
        self._messages: List[Dict[str, Any]] = []
        self._ids = set()

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(self._messages)

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return list(self._messages)

    @property
    def last(self) -> Optional[Dict[str, Any]]:
        return self._messages[-1] if self._messages else None

    def load_history(self, messages: Iterable[Dict[str, Any]]) -> None:
        self._messages = []
        self._ids = set()
        for message in messages:
            self.append(message)

    def append(self, message: Dict[str, Any]) -> bool:
        message_id = message.get("id")
        if message_id is not None and message_id in self._ids:
            return False
        if message_id is not None:
            self._ids.add(message_id)
        self._messages.append(message)
        return True

    def mark_read(self, message_id: Any, read_at: str) -> bool:
        """Set ``read_at`` once. Returns False if unknown, already read, or ``read_at`` is empty."""
        if not read_at:
            return False
        for message in self._messages:
            if message.get("id") == message_id:
                if message.get("read_at"):
                    return False
                message["read_at"] = read_at
                return True
        return False
