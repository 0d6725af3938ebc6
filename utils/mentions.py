"""
@-mention handling for the compose box and for rendering stored messages.

Stored wire format: ``@[<display name>](<profile id>)`` followed by one space.
"""

import html
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

MENTION_PATTERN = re.compile(r"@\[([^\]]+)\]\(([^)\s]+)\)")


@dataclass(frozen=True)
class MentionCandidate:
    id: str
    full_name: str
    avatar_url: Optional[str] = None


@dataclass(frozen=True)
class ActiveMention:
    start: int  # index of the "@"
    query: str


@dataclass(frozen=True)
class MentionSegment:
    text: str
    profile_id: Optional[str] = None

    @property
    def is_mention(self) -> bool:
        return self.profile_id is not None


def find_active_mention(text: str, cursor: int) -> Optional[ActiveMention]:
    """
    Return the mention being typed at ``cursor``, if any.

    Only the last "@" before the cursor counts, and only when it starts the
    text or follows whitespace. The query may be empty.
    """
    before = text[:cursor]
    at = before.rfind("@")
    if at == -1:
        return None
    if at > 0 and not before[at - 1].isspace():
        return None
    query = before[at + 1:]
    if "\n" in query:
        return None
    return ActiveMention(start=at, query=query)


def format_mention(full_name: str, profile_id: str) -> str:
    return f"@[{full_name}]({profile_id}) "


def insert_mention(
    text: str, start: int, cursor: int, candidate: MentionCandidate
) -> Tuple[str, int]:
    """Replace ``text[start:cursor]`` with a mention token. Returns (text, new cursor)."""
    prefix = text[:start]
    suffix = text[cursor:]
    token = format_mention(candidate.full_name, candidate.id)
    return f"{prefix}{token}{suffix}", len(prefix) + len(token)


def split_mentions(content: str) -> List[MentionSegment]:
    segments: List[MentionSegment] = []
    pos = 0
    for match in MENTION_PATTERN.finditer(content or ""):
        if match.start() > pos:
            segments.append(MentionSegment(text=content[pos:match.start()]))
        segments.append(MentionSegment(text=match.group(1), profile_id=match.group(2)))
        pos = match.end()
    if pos < len(content or ""):
        segments.append(MentionSegment(text=content[pos:]))
    return segments


def mentioned_profile_ids(content: str) -> List[str]:
    return list(dict.fromkeys(m.group(2) for m in MENTION_PATTERN.finditer(content or "")))


def render_plain(content: str) -> str:
    """Visible text of a message: mention tokens collapse to the display name."""
    return "".join(segment.text for segment in split_mentions(content))


def render_html(
    content: str, profile_url: Callable[[str], str] = lambda pid: f"/profile/{pid}"
) -> str:
    parts = []
    for segment in split_mentions(content):
        if segment.is_mention:
            parts.append(
                '<a class="mention" href="{}">{}</a>'.format(
                    html.escape(profile_url(segment.profile_id), quote=True),
                    html.escape(segment.text),
                )
            )
        else:
            parts.append(html.escape(segment.text))
    return "".join(parts)


class MentionSelector:
    """Highlighted-candidate state for the autocomplete list."""

    def __init__(self):
        self.candidates: List[MentionCandidate] = []
        self.index = 0

    @property
    def is_open(self) -> bool:
        return bool(self.candidates)

    @property
    def highlighted(self) -> Optional[MentionCandidate]:
        if not self.candidates:
            return None
        return self.candidates[self.index]

    def set_candidates(self, candidates: List[MentionCandidate]) -> None:
        self.candidates = list(candidates)
        self.index = 0

    def dismiss(self) -> None:
        self.candidates = []
        self.index = 0

    def handle_key(self, key: str) -> Tuple[bool, Optional[MentionCandidate]]:
        """
        Apply a key press. Returns (handled, committed candidate).

        Keys are only consumed while the list is open.
        """
        if not self.candidates:
            return False, None
        if key == "ArrowDown":
            self.index = (self.index + 1) % len(self.candidates)
            return True, None
        if key == "ArrowUp":
            self.index = (self.index - 1) % len(self.candidates)
            return True, None
        if key == "Enter":
            return True, self.highlighted
        if key == "Escape":
            self.dismiss()
            return True, None
        return False, None
