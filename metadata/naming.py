"""Filename helpers for on-disk artifacts and Content-Disposition headers."""

from __future__ import annotations

import re
from typing import Any

_UNSAFE_FILENAME_CHARS_RE = re.compile(r"[^A-Za-z0-9\s\-_().]")
_WHITESPACE_RUN_RE = re.compile(r"\s+")
_DOT_RUN_RE = re.compile(r"\.{2,}")

MAX_FILENAME_LENGTH = 200


def sanitize_filename(title: Any) -> str:
    """Return a filesystem- and header-safe fragment derived from ``title``.

    Keeps ASCII letters, digits, ``-_().`` and whitespace; whitespace runs
    become single underscores and dot runs are folded so ``..`` cannot
    survive. The result is truncated to 200 characters. Applying it twice
    gives the same result as applying it once.
    """
    sanitized = _UNSAFE_FILENAME_CHARS_RE.sub("", str(title or ""))
    sanitized = _WHITESPACE_RUN_RE.sub("_", sanitized)
    sanitized = _DOT_RUN_RE.sub(".", sanitized)
    return sanitized[:MAX_FILENAME_LENGTH]


def build_attachment_filename(title: Any, ext: str, *, fallback: str = "audio") -> str:
    stem = sanitize_filename(title).strip("._") or fallback
    return f"{stem}.{ext}"
