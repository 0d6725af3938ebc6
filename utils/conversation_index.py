"""Ordering and incremental bookkeeping for conversation list entries."""

from typing import Any, Dict, Iterable, List, Optional


def _sort_key(item: Dict[str, Any]) -> str:
    return item.get("updated_at") or ""


def sort_conversations(
    items: Iterable[Dict[str, Any]], pinned_user_id: Optional[str] = None
) -> List[Dict[str, Any]]:
    """Newest activity first, with the pinned peer's conversation moved to the top."""
    result = sorted(items, key=_sort_key, reverse=True)
    if pinned_user_id:
        pinned_index = next(
            (
                idx
                for idx, item in enumerate(result)
                if item.get("other_user", {}).get("id") == pinned_user_id
            ),
            None,
        )
        if pinned_index is not None and pinned_index != 0:
            result.insert(0, result.pop(pinned_index))
    return result


def filter_conversations(items: Iterable[Dict[str, Any]], search: Optional[str]) -> List[Dict[str, Any]]:
    if not search or not search.strip():
        return list(items)
    needle = search.strip().lower()
    return [
        item
        for item in items
        if needle in (item.get("other_user", {}).get("full_name") or "").lower()
    ]


class ConversationIndex:
    """
    Conversation list entries keyed by conversation id.

    A change touching one conversation replaces only that entry; reads
    produce the same order as a full recompute.
    """

    def __init__(self, pinned_user_id: Optional[str] = None):
        self.pinned_user_id = pinned_user_id
        self._entries: Dict[str, Dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._entries

    def replace_all(self, items: Iterable[Dict[str, Any]]) -> None:
        self._entries = {item["conversation_id"]: item for item in items}

    def upsert(self, item: Dict[str, Any]) -> None:
        self._entries[item["conversation_id"]] = item

    def discard(self, conversation_id: str) -> None:
        self._entries.pop(conversation_id, None)

    def get(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        return self._entries.get(conversation_id)

    def snapshot(self, search: Optional[str] = None) -> List[Dict[str, Any]]:
        items = filter_conversations(self._entries.values(), search)
        return sort_conversations(items, self.pinned_user_id)
