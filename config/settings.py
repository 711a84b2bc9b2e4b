"""Application settings constants."""

from __future__ import annotations

import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# External tools invoked as subprocesses.
YTDLP_BINARY = os.environ.get("AUDIOPIPE_YTDLP_BIN") or "yt-dlp"
FFMPEG_BINARY = os.environ.get("AUDIOPIPE_FFMPEG_BIN") or "ffmpeg"

# Seconds between the first download of a finished job and removal of its artifact.
CLEANUP_DELAY_SECONDS = _env_int("AUDIOPIPE_CLEANUP_DELAY_SECONDS", 60)

# Upper bound on concurrently running fetch/transcode pipelines.
MAX_CONCURRENT_PIPELINES = max(1, _env_int("AUDIOPIPE_MAX_CONCURRENT_PIPELINES", 4))

# How long a streaming request waits for a pipeline slot before answering 503.
ADMISSION_TIMEOUT_SECONDS = _env_int("AUDIOPIPE_ADMISSION_TIMEOUT_SECONDS", 30)

STREAM_CHUNK_SIZE = max(1024, _env_int("AUDIOPIPE_STREAM_CHUNK_SIZE", 64 * 1024))

SUPPORTED_FORMATS = ("mp3", "wav")

CONTENT_TYPES = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
}
