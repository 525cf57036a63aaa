from __future__ import annotations

import mimetypes
from typing import Literal
from urllib.parse import urlsplit


MediaKind = Literal["image", "video", "audio", "document", "other"]

_DOCUMENT_TYPES = {
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "text/plain",
}


def detect_media_kind(location: str) -> MediaKind:
    """Return a high-level media kind for a path or URL based on its mimetype."""
    path = urlsplit(location).path or location
    mt, _ = mimetypes.guess_type(path)
    if mt is None:
        return "other"
    if mt.startswith("image"):
        return "image"
    if mt.startswith("video"):
        return "video"
    if mt.startswith("audio"):
        return "audio"
    if mt in _DOCUMENT_TYPES:
        return "document"
    return "other"


def normalize_media_type(media_type: str) -> str:
    """Lower-case and trim a caller supplied media type ("Video" -> "video", "video/MP4" -> "video/mp4")."""
    return media_type.strip().lower()
