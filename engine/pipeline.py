"""Two-stage fetch -> transcode subprocess pipeline.

The fetch stage (yt-dlp) writes the best available audio stream to its
stdout; a pump task copies it chunk by chunk into the transcode stage
(ffmpeg), which either writes the target container to its own stdout for
streaming or to an artifact file on disk. Progress is scraped from the fetch
stage's diagnostic text, since stdout carries the media itself.

State machine per instance: starting -> running -> succeeded | failed.
Success is keyed on the transcode stage. The fetch stage's exit code only
matters when it closed its output, i.e. when the transcode stage may have
consumed a truncated stream.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, Optional

from config.settings import FFMPEG_BINARY, STREAM_CHUNK_SIZE, YTDLP_BINARY
from engine.errors import (
    ConversionCancelled,
    ConversionError,
    InputError,
    PipelineFailure,
    ToolMissingError,
    UpstreamFailure,
)
from engine.json_utils import log_event

logger = logging.getLogger(__name__)

_PROGRESS_RE = re.compile(r"(\d+(?:\.\d+)?)%")
_LINE_BREAK_RE = re.compile(r"[\r\n]")

_STDERR_TAIL_CHARS = 16_000
_STDERR_LOG_CHARS = 2_000
_FETCH_EXIT_GRACE_SECONDS = 5.0
_TRANSCODE_EXIT_GRACE_SECONDS = 10.0
_TERMINATE_GRACE_SECONDS = 3.0

_TRANSCODE_CODEC_ARGS = {
    "mp3": ["-acodec", "libmp3lame", "-q:a", "2", "-id3v2_version", "3"],
    "wav": ["-acodec", "pcm_s16le", "-ar", "44100", "-ac", "2"],
}


class PipelineState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def parse_progress(text: str | None) -> Optional[float]:
    """Return the last ``NN[.N]%`` value in ``text`` clamped to 0..100, or None."""
    matches = _PROGRESS_RE.findall(text or "")
    if not matches:
        return None
    try:
        value = float(matches[-1])
    except ValueError:
        return None
    return max(0.0, min(100.0, value))


@dataclass(frozen=True)
class ToolCommands:
    """Argument vectors for the external fetch and transcode tools."""

    fetch_binary: str = YTDLP_BINARY
    transcode_binary: str = FFMPEG_BINARY

    def fetch_argv(self, url: str) -> list[str]:
        return [
            self.fetch_binary,
            "--format", "bestaudio",
            "--no-warnings",
            "--no-playlist",
            "--progress",
            "--newline",
            "--output", "-",
            url,
        ]

    def transcode_argv(self, audio_format: str, output_path: str | None = None) -> list[str]:
        codec_args = _TRANSCODE_CODEC_ARGS.get(audio_format)
        if codec_args is None:
            raise InputError("Invalid format. Use mp3 or wav.")
        args = [self.transcode_binary, "-hide_banner", "-i", "pipe:0", "-vn", *codec_args]
        args += ["-f", audio_format]
        if output_path:
            args += ["-y", output_path]
        else:
            args.append("pipe:1")
        return args

    def metadata_argv(self, url: str) -> list[str]:
        return [self.fetch_binary, "--dump-json", "--no-playlist", "--no-warnings", url]


@dataclass(frozen=True)
class PipelineResult:
    state: PipelineState
    fetch_returncode: int | None
    transcode_returncode: int | None


async def terminate_process(proc, *, grace_sec: float = _TERMINATE_GRACE_SECONDS) -> None:
    """Best-effort terminate a subprocess quickly and safely."""
    if proc is None or proc.returncode is not None:
        return
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_sec)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()


async def discard_stream(stream) -> None:
    """Read ``stream`` to EOF so its subprocess can be reaped."""
    if stream is None:
        return
    try:
        while await stream.read(65536):
            pass
    except (ConnectionResetError, RuntimeError):
        pass


class ConversionPipeline:
    """Supervises one fetch -> transcode subprocess chain.

    With ``output_path`` unset the transcoded bytes are exposed through
    :meth:`iter_output`; otherwise the transcode stage writes the file itself.
    ``on_progress`` is called with each new percentage scraped from the fetch
    stage.
    """

    def __init__(
        self,
        url: str,
        audio_format: str,
        *,
        tools: ToolCommands | None = None,
        output_path: str | None = None,
        on_progress: Callable[[float], None] | None = None,
        chunk_size: int = STREAM_CHUNK_SIZE,
        label: str | None = None,
    ) -> None:
        self.url = url
        self.audio_format = audio_format
        self.tools = tools or ToolCommands()
        self.output_path = output_path
        self.on_progress = on_progress
        self.chunk_size = chunk_size
        self.label = label

        self.state = PipelineState.STARTING
        self.progress: float | None = None
        self.failure: ConversionError | None = None

        self._fetch_argv = self.tools.fetch_argv(url)
        self._transcode_argv = self.tools.transcode_argv(audio_format, output_path)
        self._fetch = None
        self._transcode = None
        self._fetch_stderr = ""
        self._transcode_stderr = ""
        self._fetch_eof = False
        self._cancelled = False
        self._pump_task: asyncio.Task | None = None
        self._fetch_reader: asyncio.Task | None = None
        self._transcode_reader: asyncio.Task | None = None
        self._supervisor: asyncio.Task | None = None

    @property
    def fetch_process(self):
        return self._fetch

    @property
    def transcode_process(self):
        return self._transcode

    @property
    def fetch_stderr(self) -> str:
        return self._fetch_stderr

    @property
    def transcode_stderr(self) -> str:
        return self._transcode_stderr

    @property
    def transcode_input_closed(self) -> bool:
        stdin = self._transcode.stdin if self._transcode else None
        return stdin is None or stdin.is_closing()

    async def start(self) -> None:
        if self.state is not PipelineState.STARTING:
            raise RuntimeError("pipeline already started")

        try:
            self._fetch = await asyncio.create_subprocess_exec(
                *self._fetch_argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise self._spawn_failed("fetch", ToolMissingError(self.tools.fetch_binary)) from exc
        except OSError as exc:
            error = UpstreamFailure("Failed to start download process", diagnostics=str(exc))
            raise self._spawn_failed("fetch", error) from exc

        try:
            self._transcode = await asyncio.create_subprocess_exec(
                *self._transcode_argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL if self.output_path else asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            drains = [
                asyncio.create_task(discard_stream(self._fetch.stdout)),
                asyncio.create_task(discard_stream(self._fetch.stderr)),
            ]
            await terminate_process(self._fetch)
            await asyncio.gather(*drains)
            if isinstance(exc, FileNotFoundError):
                error = ToolMissingError(self.tools.transcode_binary)
            else:
                error = PipelineFailure("Failed to start conversion process", diagnostics=str(exc))
            raise self._spawn_failed("transcode", error) from exc

        self.state = PipelineState.RUNNING
        log_event(
            logging.INFO,
            "PIPELINE_START",
            label=self.label,
            format=self.audio_format,
            fetch_pid=self._fetch.pid,
            transcode_pid=self._transcode.pid,
            output_path=self.output_path,
        )
        self._pump_task = asyncio.create_task(self._pump())
        self._fetch_reader = asyncio.create_task(self._read_fetch_stderr())
        self._transcode_reader = asyncio.create_task(self._read_transcode_stderr())
        self._supervisor = asyncio.create_task(self._supervise())

    async def iter_output(self) -> AsyncIterator[bytes]:
        """Yield transcoded chunks as produced; raise the failure if the run fails."""
        if self._transcode is None or self._transcode.stdout is None:
            raise RuntimeError("pipeline has no output stream")
        stream = self._transcode.stdout
        while True:
            chunk = await stream.read(self.chunk_size)
            if not chunk:
                break
            yield chunk
        await self.wait()

    async def wait(self) -> PipelineResult:
        if self._supervisor is None:
            if self.failure is not None:
                raise self.failure
            raise RuntimeError("pipeline not started")
        await asyncio.shield(self._supervisor)
        if self.failure is not None:
            raise self.failure
        return self._result()

    async def cancel(self) -> None:
        """Terminate both subprocesses; used when the consumer goes away."""
        if self.state in (PipelineState.SUCCEEDED, PipelineState.FAILED):
            return
        self._cancelled = True
        drains = []
        if self._transcode is not None and not self.output_path:
            drains.append(asyncio.create_task(discard_stream(self._transcode.stdout)))
        await asyncio.gather(
            terminate_process(self._fetch),
            terminate_process(self._transcode),
        )
        if self._supervisor is not None:
            await asyncio.shield(self._supervisor)
        if drains:
            await asyncio.gather(*drains)
        self._set_failed(ConversionCancelled(), stage=None)

    def _result(self) -> PipelineResult:
        return PipelineResult(
            state=self.state,
            fetch_returncode=self._fetch.returncode if self._fetch else None,
            transcode_returncode=self._transcode.returncode if self._transcode else None,
        )

    def _spawn_failed(self, stage: str, error: ConversionError) -> ConversionError:
        self._set_failed(error, stage=stage)
        return error

    def _set_failed(self, error: ConversionError, *, stage: str | None) -> None:
        if self.state in (PipelineState.SUCCEEDED, PipelineState.FAILED):
            return
        self.state = PipelineState.FAILED
        self.failure = error
        diagnostics = error.diagnostics or ""
        log_event(
            logging.WARNING,
            "PIPELINE_FAILED",
            label=self.label,
            stage=stage,
            error=error.message,
            fetch_returncode=self._fetch.returncode if self._fetch else None,
            transcode_returncode=self._transcode.returncode if self._transcode else None,
            stderr=diagnostics[-_STDERR_LOG_CHARS:],
        )

    def _close_transcode_input(self) -> None:
        stdin = self._transcode.stdin if self._transcode else None
        if stdin is None or stdin.is_closing():
            return
        try:
            stdin.close()
        except (BrokenPipeError, ConnectionResetError):
            pass

    def _report_progress(self, text: str) -> None:
        value = parse_progress(text)
        if value is None:
            return
        self.progress = value
        if self.on_progress is None:
            return
        try:
            self.on_progress(value)
        except Exception:
            logger.exception("pipeline_progress_callback_failed label=%s", self.label)

    async def _pump(self) -> None:
        reader = self._fetch.stdout
        writer = self._transcode.stdin
        forwarding = True
        try:
            while True:
                chunk = await reader.read(self.chunk_size)
                if not chunk:
                    self._fetch_eof = True
                    break
                if not forwarding or writer.is_closing():
                    continue
                try:
                    writer.write(chunk)
                    await writer.drain()
                except (BrokenPipeError, ConnectionResetError):
                    # The transcode stage stopped reading. Keep draining the
                    # fetch stage so it can exit; the transcode exit code decides.
                    forwarding = False
        finally:
            self._close_transcode_input()

    async def _read_fetch_stderr(self) -> None:
        stream = self._fetch.stderr
        pending = ""
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            text = chunk.decode("utf-8", errors="replace")
            self._fetch_stderr = (self._fetch_stderr + text)[-_STDERR_TAIL_CHARS:]
            pending += text
            *lines, pending = _LINE_BREAK_RE.split(pending)
            for line in lines:
                self._report_progress(line)
        if pending:
            self._report_progress(pending)

    async def _read_transcode_stderr(self) -> None:
        stream = self._transcode.stderr
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            text = chunk.decode("utf-8", errors="replace")
            self._transcode_stderr = (self._transcode_stderr + text)[-_STDERR_TAIL_CHARS:]

    async def _supervise(self) -> None:
        fetch_wait = asyncio.create_task(self._fetch.wait())
        transcode_wait = asyncio.create_task(self._transcode.wait())
        try:
            await self._supervise_exits(fetch_wait, transcode_wait)
        finally:
            for task in (fetch_wait, transcode_wait):
                if not task.done():
                    task.cancel()
            background = [t for t in (self._pump_task, self._fetch_reader, self._transcode_reader) if t]
            if background:
                _done, lingering = await asyncio.wait(background, timeout=_TERMINATE_GRACE_SECONDS)
                for task in lingering:
                    task.cancel()

    async def _supervise_exits(self, fetch_wait, transcode_wait) -> None:
        done, _pending = await asyncio.wait(
            {fetch_wait, transcode_wait},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if self._cancelled:
            return

        if fetch_wait in done and transcode_wait not in done and fetch_wait.result() != 0:
            # Fetch closed with failure first: end the transcode input so it cannot hang.
            self._close_transcode_input()
            await self._fetch_reader
            self._set_failed(UpstreamFailure(diagnostics=self._fetch_stderr), stage="fetch")
            try:
                await asyncio.wait_for(asyncio.shield(transcode_wait), _TRANSCODE_EXIT_GRACE_SECONDS)
            except asyncio.TimeoutError:
                await self._terminate_transcode()
            return

        transcode_code = await transcode_wait
        if self._cancelled:
            return

        if transcode_code != 0:
            await terminate_process(self._fetch)
            await asyncio.wait([self._fetch_reader, self._transcode_reader])
            fetch_code = self._fetch.returncode
            if self._fetch_eof and fetch_code not in (None, 0):
                error = UpstreamFailure(diagnostics=self._fetch_stderr)
                stage = "fetch"
            else:
                error = PipelineFailure(diagnostics=self._transcode_stderr)
                stage = "transcode"
            self._set_failed(error, stage=stage)
            return

        if self._fetch_eof:
            # The fetch stage closed its output; a failing exit means the
            # transcode stage consumed a truncated stream.
            try:
                fetch_code = await asyncio.wait_for(asyncio.shield(fetch_wait), _FETCH_EXIT_GRACE_SECONDS)
            except asyncio.TimeoutError:
                fetch_code = 0
                await terminate_process(self._fetch)
            if fetch_code != 0:
                await self._fetch_reader
                self._set_failed(UpstreamFailure(diagnostics=self._fetch_stderr), stage="fetch")
                return
        else:
            await terminate_process(self._fetch)

        self.state = PipelineState.SUCCEEDED
        log_event(
            logging.INFO,
            "PIPELINE_SUCCEEDED",
            label=self.label,
            format=self.audio_format,
            output_path=self.output_path,
        )

    async def _terminate_transcode(self) -> None:
        drain = None
        if not self.output_path:
            drain = asyncio.create_task(discard_stream(self._transcode.stdout))
        await terminate_process(self._transcode)
        if drain is not None:
            await drain
