"""Retrieve preview metadata for a video by running the fetch tool in dump mode."""

from __future__ import annotations

import asyncio
import json
from dataclasses import asdict, dataclass
from typing import Any

from engine.errors import MetadataParseError, ToolMissingError, UpstreamFailure
from engine.pipeline import ToolCommands

METADATA_TIMEOUT_SECONDS = 60


@dataclass(frozen=True)
class VideoInfo:
    title: str | None
    thumbnail: str | None
    duration: float | None
    channel: str | None
    views: int | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def parse_video_info(raw: str | bytes) -> VideoInfo:
    """Project a ``--dump-json`` record onto :class:`VideoInfo`.

    Raises:
        MetadataParseError: If ``raw`` is not a single JSON object.
    """
    try:
        payload = json.loads(raw or "")
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MetadataParseError(diagnostics=str(exc)) from exc
    if not isinstance(payload, dict):
        raise MetadataParseError(diagnostics="metadata record is not an object")

    return VideoInfo(
        title=payload.get("title"),
        thumbnail=payload.get("thumbnail"),
        duration=payload.get("duration"),
        channel=payload.get("channel") or payload.get("uploader"),
        views=payload.get("view_count"),
    )


async def fetch_video_info(
    url: str,
    *,
    tools: ToolCommands | None = None,
    timeout: float = METADATA_TIMEOUT_SECONDS,
) -> VideoInfo:
    """Return title, thumbnail, duration, channel and view count for ``url``.

    Raises:
        ToolMissingError: If the fetch tool is not installed or not in PATH.
        UpstreamFailure: If the tool exits non-zero or times out.
        MetadataParseError: If its output is not a parseable record.
    """
    tools = tools or ToolCommands()
    try:
        proc = await asyncio.create_subprocess_exec(
            *tools.metadata_argv(url),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise ToolMissingError(tools.fetch_binary) from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        proc.kill()
        await proc.communicate()
        raise UpstreamFailure(diagnostics=f"metadata dump timed out for {url}") from exc

    if proc.returncode != 0:
        stderr_text = (stderr or b"").decode("utf-8", errors="replace").strip()
        raise UpstreamFailure(diagnostics=stderr_text or f"exit code {proc.returncode}")

    return parse_video_info(stdout)
