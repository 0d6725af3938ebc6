"""Presence snapshots as seen by one viewer."""

from datetime import datetime
from typing import FrozenSet, Iterable, Optional


class PresenceTracker:
    """
    Online-set for one presence scope.

    Every sync replaces the whole set. Individual join/leave ordering never
    matters, only the latest snapshot does.
    """

    def __init__(self):
        self._online: FrozenSet[str] = frozenset()
        self.synced = False

    def apply_sync(self, members: Iterable[str]) -> None:
        self._online = frozenset(str(member) for member in members)
        self.synced = True

    def reset(self) -> None:
        self._online = frozenset()
        self.synced = False

    @property
    def online(self) -> FrozenSet[str]:
        return self._online

    def is_online(self, user_id: str) -> bool:
        return user_id in self._online


def describe_last_seen(
    last_seen: Optional[datetime],
    now: Optional[datetime] = None,
    *,
    online: bool = False,
) -> str:
    """Header text for a counterpart."""
    if online:
        return "online"
    if last_seen is None:
        return "offline"
    now = now or datetime.utcnow()
    minutes = int((now - last_seen).total_seconds() // 60)
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes} min ago"
    if minutes < 1440:
        return f"{minutes // 60} h ago"
    return last_seen.strftime("%d.%m.%Y")
