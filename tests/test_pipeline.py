from __future__ import annotations

import asyncio

import pytest

from engine.errors import (
    ConversionCancelled,
    InputError,
    PipelineFailure,
    ToolMissingError,
    UpstreamFailure,
)
from engine.pipeline import ConversionPipeline, PipelineState, ToolCommands, parse_progress
from fake_tools import (
    EXPECTED_OUTPUT,
    FETCH_HANGS,
    FETCH_PRIVATE,
    TRANSCODE_FAILS,
    ScriptedTools,
)

URL = "https://www.youtube.com/watch?v=abc123"


def test_parse_progress_takes_last_percentage_on_the_line() -> None:
    assert parse_progress("[download]  42.5% of 3.2MiB") == 42.5
    assert parse_progress("[download] 10% then 55.25%") == 55.25
    assert parse_progress("[download] Destination: -") is None
    assert parse_progress("") is None
    assert parse_progress(None) is None


def test_parse_progress_clamps_out_of_range_values() -> None:
    assert parse_progress("overshoot 130%") == 100.0


def test_tool_commands_build_stream_and_file_transcode_argv() -> None:
    tools = ToolCommands(fetch_binary="yt-dlp", transcode_binary="ffmpeg")

    fetch = tools.fetch_argv(URL)
    assert fetch[0] == "yt-dlp"
    assert fetch[-1] == URL
    assert fetch[fetch.index("--output") + 1] == "-"

    to_pipe = tools.transcode_argv("mp3")
    assert to_pipe[0] == "ffmpeg"
    assert to_pipe[-1] == "pipe:1"
    assert "libmp3lame" in to_pipe

    to_file = tools.transcode_argv("wav", "/tmp/out.wav")
    assert to_file[-2:] == ["-y", "/tmp/out.wav"]
    assert "pcm_s16le" in to_file


def test_tool_commands_reject_unknown_format() -> None:
    with pytest.raises(InputError) as excinfo:
        ToolCommands().transcode_argv("flac")
    assert excinfo.value.message == "Invalid format. Use mp3 or wav."


def test_streaming_pipeline_yields_output_and_reports_progress() -> None:
    seen: list[float] = []

    async def _run():
        pipeline = ConversionPipeline(URL, "mp3", tools=ScriptedTools(), on_progress=seen.append)
        await pipeline.start()
        assert pipeline.state is PipelineState.RUNNING
        chunks = [chunk async for chunk in pipeline.iter_output()]
        return pipeline, b"".join(chunks)

    pipeline, output = asyncio.run(_run())

    assert output == EXPECTED_OUTPUT
    assert seen == [42.5, 100.0]
    assert pipeline.state is PipelineState.SUCCEEDED
    assert pipeline.failure is None


def test_file_pipeline_writes_artifact(tmp_path) -> None:
    target = tmp_path / "job.wav"

    async def _run():
        pipeline = ConversionPipeline(URL, "wav", tools=ScriptedTools(), output_path=str(target))
        await pipeline.start()
        return pipeline, await pipeline.wait()

    pipeline, result = asyncio.run(_run())

    assert result.state is PipelineState.SUCCEEDED
    assert result.fetch_returncode == 0
    assert result.transcode_returncode == 0
    assert target.read_bytes() == EXPECTED_OUTPUT
    assert pipeline.progress == 100.0


def test_fetch_failure_fails_pipeline_and_closes_transcode_input(tmp_path) -> None:
    tools = ScriptedTools(fetch_script=FETCH_PRIVATE)

    async def _run():
        pipeline = ConversionPipeline(URL, "mp3", tools=tools, output_path=str(tmp_path / "x.mp3"))
        await pipeline.start()
        with pytest.raises(UpstreamFailure) as excinfo:
            await pipeline.wait()
        return pipeline, excinfo.value

    pipeline, error = asyncio.run(_run())

    assert pipeline.state is PipelineState.FAILED
    assert pipeline.transcode_input_closed is True
    assert "Private video" in error.diagnostics
    assert error.message == "Failed to fetch video. Please check the URL and try again."
    assert pipeline.transcode_process.returncode is not None


def test_transcode_failure_is_reported_as_conversion_failure() -> None:
    tools = ScriptedTools(transcode_script=TRANSCODE_FAILS)

    async def _run():
        pipeline = ConversionPipeline(URL, "mp3", tools=tools)
        await pipeline.start()
        with pytest.raises(PipelineFailure) as excinfo:
            async for _chunk in pipeline.iter_output():
                pass
        return pipeline, excinfo.value

    pipeline, error = asyncio.run(_run())

    assert pipeline.state is PipelineState.FAILED
    assert "Invalid data" in error.diagnostics
    assert pipeline.fetch_process.returncode is not None


def test_missing_fetch_binary_raises_tool_missing() -> None:
    tools = ToolCommands(fetch_binary="/nonexistent/bin/yt-dlp-missing")

    async def _run():
        pipeline = ConversionPipeline(URL, "mp3", tools=tools)
        with pytest.raises(ToolMissingError) as excinfo:
            await pipeline.start()
        return pipeline, excinfo.value

    pipeline, error = asyncio.run(_run())

    assert error.tool == "/nonexistent/bin/yt-dlp-missing"
    assert error.status_code == 500
    assert pipeline.state is PipelineState.FAILED


def test_missing_transcode_binary_terminates_fetch_stage() -> None:
    class _MissingTranscoder(ScriptedTools):
        def transcode_argv(self, audio_format, output_path=None):
            return [self.transcode_binary, "-i", "pipe:0", "pipe:1"]

    tools = _MissingTranscoder(fetch_script=FETCH_HANGS, transcode_binary="/nonexistent/bin/ffmpeg-missing")

    async def _run():
        pipeline = ConversionPipeline(URL, "mp3", tools=tools)
        with pytest.raises(ToolMissingError):
            await pipeline.start()
        return pipeline

    pipeline = asyncio.run(_run())

    assert pipeline.fetch_process.returncode is not None


def test_cancel_terminates_both_stages() -> None:
    tools = ScriptedTools(fetch_script=FETCH_HANGS)

    async def _run():
        pipeline = ConversionPipeline(URL, "mp3", tools=tools)
        await pipeline.start()
        await asyncio.sleep(0.3)
        await pipeline.cancel()
        return pipeline

    pipeline = asyncio.run(_run())

    assert pipeline.state is PipelineState.FAILED
    assert isinstance(pipeline.failure, ConversionCancelled)
    assert pipeline.fetch_process.returncode is not None
    assert pipeline.transcode_process.returncode is not None


def test_cancel_after_success_is_a_no_op() -> None:
    async def _run():
        pipeline = ConversionPipeline(URL, "mp3", tools=ScriptedTools())
        await pipeline.start()
        async for _chunk in pipeline.iter_output():
            pass
        await pipeline.cancel()
        return pipeline

    pipeline = asyncio.run(_run())

    assert pipeline.state is PipelineState.SUCCEEDED
    assert pipeline.failure is None
