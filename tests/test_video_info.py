from __future__ import annotations

import asyncio
import json

import pytest

from engine.errors import MetadataParseError, ToolMissingError, UpstreamFailure
from engine.pipeline import ToolCommands
from fake_tools import DEFAULT_INFO, INFO_FAILS, INFO_GARBAGE, ScriptedTools
from media.video_info import VideoInfo, fetch_video_info, parse_video_info

URL = "https://youtu.be/abc123"


def test_parse_video_info_projects_fields() -> None:
    raw = json.dumps(
        {
            "title": "Track",
            "thumbnail": "https://example.com/t.jpg",
            "duration": 61.5,
            "channel": "Artist - Topic",
            "uploader": "Uploader",
            "view_count": 10,
            "formats": [{"format_id": "251"}],
        }
    )

    info = parse_video_info(raw)

    assert info == VideoInfo(
        title="Track",
        thumbnail="https://example.com/t.jpg",
        duration=61.5,
        channel="Artist - Topic",
        views=10,
    )


def test_parse_video_info_falls_back_to_uploader_and_tolerates_missing_fields() -> None:
    info = parse_video_info(b'{"uploader": "Someone"}')

    assert info.channel == "Someone"
    assert info.title is None
    assert info.to_dict() == {
        "title": None,
        "thumbnail": None,
        "duration": None,
        "channel": "Someone",
        "views": None,
    }


@pytest.mark.parametrize("raw", ["", "not json", "[1, 2]", b"\xff\xfe"])
def test_parse_video_info_rejects_non_records(raw) -> None:
    with pytest.raises(MetadataParseError):
        parse_video_info(raw)


def test_fetch_video_info_reads_dump_from_tool() -> None:
    info = asyncio.run(fetch_video_info(URL, tools=ScriptedTools()))

    assert info.title == DEFAULT_INFO["title"]
    assert info.channel == DEFAULT_INFO["uploader"]
    assert info.views == DEFAULT_INFO["view_count"]
    assert info.duration == DEFAULT_INFO["duration"]


def test_fetch_video_info_maps_tool_failure_to_upstream_failure() -> None:
    with pytest.raises(UpstreamFailure) as excinfo:
        asyncio.run(fetch_video_info(URL, tools=ScriptedTools(info_script=INFO_FAILS)))

    assert "Video unavailable" in excinfo.value.diagnostics
    assert excinfo.value.status_code == 400


def test_fetch_video_info_rejects_unparseable_output() -> None:
    with pytest.raises(MetadataParseError):
        asyncio.run(fetch_video_info(URL, tools=ScriptedTools(info_script=INFO_GARBAGE)))


def test_fetch_video_info_reports_missing_tool() -> None:
    tools = ToolCommands(fetch_binary="/nonexistent/bin/yt-dlp-missing")

    with pytest.raises(ToolMissingError) as excinfo:
        asyncio.run(fetch_video_info(URL, tools=tools))

    assert excinfo.value.tool == "/nonexistent/bin/yt-dlp-missing"
