"""
Message content variants.

A stored message row is interpreted as exactly one of: text, image, video,
gif, file, location or a shared profile card.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from utils.mentions import mentioned_profile_ids, render_html, render_plain, split_mentions

logger = logging.getLogger(__name__)

LOCATION_PLACEHOLDER = "My current location"
MEDIA_PLACEHOLDER = "Attachment"


class ContentKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    GIF = "gif"
    FILE = "file"
    LOCATION = "location"
    PROFILE = "profile"


MEDIA_KINDS = {ContentKind.IMAGE, ContentKind.VIDEO, ContentKind.GIF, ContentKind.FILE}


@dataclass(frozen=True)
class TextContent:
    text: str
    kind: ContentKind = ContentKind.TEXT


@dataclass(frozen=True)
class MediaContent:
    kind: ContentKind
    url: str
    caption: str


@dataclass(frozen=True)
class LocationContent:
    latitude: float
    longitude: float
    caption: str
    kind: ContentKind = ContentKind.LOCATION


@dataclass(frozen=True)
class ProfileShareContent:
    profile_id: str
    full_name: Optional[str]
    avatar_url: Optional[str]
    kind: ContentKind = ContentKind.PROFILE


MessageContent = Union[TextContent, MediaContent, LocationContent, ProfileShareContent]


def gif_placeholder(title: Optional[str]) -> str:
    return f"GIF: {title or ''}".strip()


def encode_profile_share(profile_id: str, full_name: Optional[str], avatar_url: Optional[str]) -> str:
    return json.dumps({"id": profile_id, "full_name": full_name, "avatar_url": avatar_url})


def parse_content(
    content: str,
    media_url: Optional[str] = None,
    media_type: Optional[str] = None,
    location_data: Optional[Dict[str, Any]] = None,
) -> MessageContent:
    if media_type == ContentKind.PROFILE.value:
        try:
            data = json.loads(content)
            return ProfileShareContent(
                profile_id=str(data["id"]),
                full_name=data.get("full_name"),
                avatar_url=data.get("avatar_url"),
            )
        except (TypeError, ValueError, KeyError):
            logger.warning("Malformed profile share payload, rendering as text")
            return TextContent(text=content or "")

    if location_data and "latitude" in location_data and "longitude" in location_data:
        return LocationContent(
            latitude=float(location_data["latitude"]),
            longitude=float(location_data["longitude"]),
            caption=content or LOCATION_PLACEHOLDER,
        )

    if media_url and media_type in {kind.value for kind in MEDIA_KINDS}:
        return MediaContent(kind=ContentKind(media_type), url=media_url, caption=content or "")

    return TextContent(text=content or "")


def _render_text(item: TextContent) -> Dict[str, Any]:
    return {
        "segments": [
            {"text": s.text, "profile_id": s.profile_id} for s in split_mentions(item.text)
        ],
        "html": render_html(item.text),
        "mentions": mentioned_profile_ids(item.text),
    }


def _render_media(item: MediaContent) -> Dict[str, Any]:
    return {"url": item.url, "caption": item.caption}


def _render_location(item: LocationContent) -> Dict[str, Any]:
    return {
        "latitude": item.latitude,
        "longitude": item.longitude,
        "caption": item.caption,
        "map_url": f"https://www.google.com/maps?q={item.latitude},{item.longitude}",
    }


def _render_profile(item: ProfileShareContent) -> Dict[str, Any]:
    return {
        "profile_id": item.profile_id,
        "full_name": item.full_name,
        "avatar_url": item.avatar_url,
    }


_RENDERERS = {
    TextContent: _render_text,
    MediaContent: _render_media,
    LocationContent: _render_location,
    ProfileShareContent: _render_profile,
}


def render_content(item: MessageContent) -> Dict[str, Any]:
    """Display payload for one content variant, tagged with its kind."""
    renderer = _RENDERERS.get(type(item))
    if renderer is None:
        raise TypeError(f"No renderer for {type(item).__name__}")
    body = renderer(item)
    body["kind"] = item.kind.value
    return body


def preview_text(item: MessageContent) -> str:
    """One-line summary used by the conversation list."""
    if isinstance(item, TextContent):
        return render_plain(item.text)
    if isinstance(item, ProfileShareContent):
        return f"Shared profile: {item.full_name or ''}".strip()
    if isinstance(item, LocationContent):
        return item.caption
    return item.caption or MEDIA_PLACEHOLDER
