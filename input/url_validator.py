"""Video URL validation helpers for raw request input."""

from __future__ import annotations

import re
from typing import Optional

_VIDEO_URL_PATTERNS = (
    re.compile(r"^(?:https?://)?(?:www\.)?youtube\.com/watch\?v=([\w-]+)", re.ASCII),
    re.compile(r"^(?:https?://)?(?:www\.)?youtu\.be/([\w-]+)", re.ASCII),
    re.compile(r"^(?:https?://)?(?:www\.)?youtube\.com/shorts/([\w-]+)", re.ASCII),
)


def is_valid_video_url(url: object) -> bool:
    """Return True when ``url`` is a watch-page, short-link or shorts URL.

    No network calls; the check is purely lexical. Scheme and ``www.`` are
    optional, and the video id must be made of word characters and hyphens.
    """
    return extract_video_id(url) is not None


def extract_video_id(url: object) -> Optional[str]:
    if not isinstance(url, str) or not url:
        return None
    for pattern in _VIDEO_URL_PATTERNS:
        match = pattern.match(url)
        if match:
            return match.group(1)
    return None
