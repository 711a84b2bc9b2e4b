"""Conversion services: background jobs with downloadable artifacts, and
direct streaming conversions.

Both run on the server event loop and share one admission limiter, so the
number of live fetch/transcode process pairs stays bounded.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Optional

import anyio
from apscheduler.jobstores.base import ConflictingIdError
from apscheduler.triggers.date import DateTrigger

from config.settings import (
    ADMISSION_TIMEOUT_SECONDS,
    CLEANUP_DELAY_SECONDS,
    CONTENT_TYPES,
    MAX_CONCURRENT_PIPELINES,
    STREAM_CHUNK_SIZE,
    SUPPORTED_FORMATS,
)
from engine.errors import (
    ConversionCancelled,
    ConversionError,
    InputError,
    JobStateError,
    PipelineFailure,
    ServerBusyError,
    UpstreamFailure,
)
from engine.job_store import JOB_STATUS_COMPLETED, JOB_STATUS_PROCESSING, Job, JobStore, new_job_id
from engine.json_utils import log_event
from engine.paths import ensure_dir, is_within_base
from engine.pipeline import ConversionPipeline, PipelineState, ToolCommands
from input.url_validator import extract_video_id, is_valid_video_url
from media.video_info import fetch_video_info
from metadata.naming import build_attachment_filename

logger = logging.getLogger(__name__)

CLEANUP_JOB_PREFIX = "cleanup_"
_CLEANUP_MISFIRE_GRACE_SECONDS = 300
_SHUTDOWN_GRACE_SECONDS = 10.0
# Only names this service writes: <uuid4 hex>.<format>.
_ARTIFACT_NAME_RE = re.compile(r"^[0-9a-f]{32}\.(?:%s)$" % "|".join(SUPPORTED_FORMATS))


def validate_conversion_request(url: Any, audio_format: Any) -> str:
    """Check a (url, format) pair and return the format to use.

    Raises:
        InputError: With the user-facing message for the first failing field.
    """
    if not isinstance(url, str) or not is_valid_video_url(url):
        raise InputError("Invalid YouTube URL")
    if audio_format not in SUPPORTED_FORMATS:
        raise InputError("Invalid format. Use mp3 or wav.")
    return audio_format


def content_type_for(filename: str) -> str:
    ext = os.path.splitext(filename)[1].lstrip(".").lower()
    return CONTENT_TYPES.get(ext, "application/octet-stream")


class PipelineLimiter:
    """Bounds how many pipelines run at once on the current event loop."""

    def __init__(self, max_concurrent: int = MAX_CONCURRENT_PIPELINES) -> None:
        self.max_concurrent = max(1, int(max_concurrent))
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        self._active = 0

    @property
    def active(self) -> int:
        return self._active

    async def acquire(self, timeout: float | None = None) -> None:
        if timeout is None:
            await self._semaphore.acquire()
        else:
            try:
                await asyncio.wait_for(self._semaphore.acquire(), timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise ServerBusyError() from exc
        self._active += 1

    def release(self) -> None:
        self._active -= 1
        self._semaphore.release()


@dataclass(frozen=True)
class DownloadArtifact:
    filename: str
    content: bytes
    content_type: str


def _read_file(path: str) -> bytes:
    with open(path, "rb") as handle:
        return handle.read()


class AsyncConversionService:
    """Runs conversions in the background and serves their artifacts once.

    Each job writes ``<downloads_dir>/<job_id>.<format>``. The first
    successful download schedules removal of the artifact and the job record
    after ``cleanup_delay`` seconds; later downloads inside that window are
    served without extending it.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        downloads_dir: str,
        scheduler,
        tools: ToolCommands | None = None,
        limiter: PipelineLimiter | None = None,
        cleanup_delay: float = CLEANUP_DELAY_SECONDS,
    ) -> None:
        self.store = store
        self.downloads_dir = downloads_dir
        self.scheduler = scheduler
        self.tools = tools or ToolCommands()
        self.limiter = limiter or PipelineLimiter()
        self.cleanup_delay = cleanup_delay
        self._tasks: set[asyncio.Task] = set()
        ensure_dir(self.downloads_dir)

    async def start_conversion(self, url: Any, audio_format: Any) -> str:
        audio_format = validate_conversion_request(url, audio_format)
        job_id = new_job_id()
        output_path = os.path.join(self.downloads_dir, f"{job_id}.{audio_format}")
        task = asyncio.create_task(
            self._run_job(job_id, url, audio_format, output_path),
            name=f"conversion-{job_id}",
        )
        # The task cannot run before the next await, so the record is in
        # place before its first progress update.
        self.store.set(job_id, Job(id=job_id, format=audio_format, task=task))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        log_event(logging.INFO, "JOB_CREATED", job_id=job_id, format=audio_format, url=url)
        return job_id

    def get_status(self, job_id: str) -> Optional[Job]:
        return self.store.get(job_id)

    async def cancel(self, job_id: str) -> Optional[Job]:
        """Stop a running job. Returns None for unknown ids.

        Raises:
            JobStateError: If the job already finished.
        """
        job = self.store.get(job_id)
        if job is None:
            return None
        if job.status != JOB_STATUS_PROCESSING or job.task is None:
            raise JobStateError()
        job.task.cancel()
        await asyncio.wait([job.task])
        current = self.store.get(job_id)
        if current is not None and current.status == JOB_STATUS_PROCESSING:
            # Cancelled before its first step; the job body never ran.
            self._mark_failed(job_id, ConversionCancelled().message)
        log_event(logging.INFO, "JOB_CANCELLED", job_id=job_id)
        return self.store.get(job_id)

    async def download(self, job_id: str) -> Optional[DownloadArtifact]:
        """Return the finished artifact for ``job_id`` or None when unavailable."""
        job = self.store.get(job_id)
        if job is None or job.status != JOB_STATUS_COMPLETED or not job.filename:
            return None
        path = self._artifact_path(job.filename)
        if path is None:
            return None
        try:
            content = await anyio.to_thread.run_sync(_read_file, path)
        except FileNotFoundError:
            return None
        self._schedule_cleanup(job_id, path)
        return DownloadArtifact(
            filename=job.filename,
            content=content,
            content_type=content_type_for(job.filename),
        )

    def cleanup(self, job_id: str, path: str) -> None:
        """Remove an artifact and its job record. Runs on the scheduler thread."""
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError:
            logger.exception("artifact_cleanup_failed job_id=%s path=%s", job_id, path)
        self.store.delete(job_id)
        log_event(logging.INFO, "JOB_CLEANED_UP", job_id=job_id)

    def purge_artifacts(self) -> int:
        """Delete leftover artifacts; the job table does not survive restarts."""
        removed = 0
        try:
            entries = list(os.scandir(self.downloads_dir))
        except FileNotFoundError:
            return 0
        for entry in entries:
            if not entry.is_file() or not _ARTIFACT_NAME_RE.match(entry.name):
                continue
            try:
                os.remove(entry.path)
                removed += 1
            except OSError:
                logger.warning("Failed to remove stale artifact %s", entry.path)
        if removed:
            logger.info("Removed %s stale artifact(s) from %s", removed, self.downloads_dir)
        return removed

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks, timeout=_SHUTDOWN_GRACE_SECONDS)

    async def _run_job(self, job_id: str, url: str, audio_format: str, output_path: str) -> None:
        pipeline = ConversionPipeline(
            url,
            audio_format,
            tools=self.tools,
            output_path=output_path,
            on_progress=lambda value: self._record_progress(job_id, value),
            label=job_id,
        )
        try:
            await self.limiter.acquire()
            try:
                await pipeline.start()
                await pipeline.wait()
            finally:
                self.limiter.release()
        except asyncio.CancelledError:
            await pipeline.cancel()
            self._discard_partial(output_path)
            self._mark_failed(job_id, ConversionCancelled().message)
            raise
        except ConversionError as exc:
            self._discard_partial(output_path)
            self._mark_failed(job_id, exc.message)
            return
        except Exception:
            logger.exception("conversion_job_crashed job_id=%s", job_id)
            self._discard_partial(output_path)
            self._mark_failed(job_id, PipelineFailure().message)
            return

        filename = self._find_artifact(job_id)
        if filename is None:
            self._mark_failed(job_id, "Output file not found")
            return
        job = self.store.get(job_id)
        if job is None:
            return
        self.store.set(job_id, job.completed(filename))
        log_event(logging.INFO, "JOB_COMPLETED", job_id=job_id, filename=filename)

    def _record_progress(self, job_id: str, progress: float) -> None:
        job = self.store.get(job_id)
        if job is None or job.status != JOB_STATUS_PROCESSING:
            return
        self.store.set(job_id, job.with_progress(progress))

    def _mark_failed(self, job_id: str, message: str) -> None:
        job = self.store.get(job_id)
        if job is None:
            return
        self.store.set(job_id, job.failed(message))
        log_event(logging.WARNING, "JOB_FAILED", job_id=job_id, error=message)

    def _find_artifact(self, job_id: str) -> Optional[str]:
        try:
            names = sorted(os.listdir(self.downloads_dir))
        except FileNotFoundError:
            return None
        for name in names:
            if name.startswith(f"{job_id}."):
                return name
        return None

    def _artifact_path(self, filename: str) -> Optional[str]:
        path = os.path.join(self.downloads_dir, os.path.basename(filename))
        if not is_within_base(path, self.downloads_dir):
            return None
        return path

    def _discard_partial(self, output_path: str) -> None:
        try:
            os.remove(output_path)
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Failed to remove partial artifact %s", output_path)

    def _schedule_cleanup(self, job_id: str, path: str) -> None:
        run_at = datetime.now(timezone.utc) + timedelta(seconds=self.cleanup_delay)
        try:
            self.scheduler.add_job(
                self.cleanup,
                trigger=DateTrigger(run_date=run_at),
                args=[job_id, path],
                id=f"{CLEANUP_JOB_PREFIX}{job_id}",
                replace_existing=False,
                misfire_grace_time=_CLEANUP_MISFIRE_GRACE_SECONDS,
            )
        except ConflictingIdError:
            return
        log_event(logging.INFO, "JOB_CLEANUP_SCHEDULED", job_id=job_id, run_at=run_at)


class ConversionStream:
    """A started streaming pipeline plus the response metadata for it.

    :meth:`close` is idempotent; it terminates the pipeline if it has not
    finished and returns the admission slot.
    """

    def __init__(
        self,
        pipeline: ConversionPipeline,
        *,
        filename: str,
        content_type: str,
        release: Callable[[], None],
    ) -> None:
        self.pipeline = pipeline
        self.filename = filename
        self.content_type = content_type
        self._release = release
        self._closed = False

    def headers(self) -> dict[str, str]:
        return {
            "Content-Disposition": f'attachment; filename="{self.filename}"',
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "Pragma": "no-cache",
            "Expires": "0",
            "X-Content-Type-Options": "nosniff",
        }

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.pipeline.iter_output():
                yield chunk
        finally:
            with anyio.CancelScope(shield=True):
                await self.close()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            if self.pipeline.state not in (PipelineState.SUCCEEDED, PipelineState.FAILED):
                await self.pipeline.cancel()
                log_event(logging.INFO, "STREAM_ABORTED", label=self.pipeline.label)
            elif self.pipeline.state is PipelineState.SUCCEEDED:
                log_event(logging.INFO, "STREAM_DONE", label=self.pipeline.label)
        finally:
            self._release()


class StreamingConversionService:
    """Starts pipelines whose transcoded output is relayed to the client."""

    def __init__(
        self,
        *,
        tools: ToolCommands | None = None,
        limiter: PipelineLimiter | None = None,
        admission_timeout: float = ADMISSION_TIMEOUT_SECONDS,
        chunk_size: int = STREAM_CHUNK_SIZE,
    ) -> None:
        self.tools = tools or ToolCommands()
        self.limiter = limiter or PipelineLimiter()
        self.admission_timeout = admission_timeout
        self.chunk_size = chunk_size

    async def open_stream(self, url: Any, audio_format: Any) -> ConversionStream:
        """Validate, look up the title and start the pipeline.

        Everything that can fail before the first byte fails here, so the
        caller can still answer with an error status.
        """
        audio_format = validate_conversion_request(url, audio_format)
        info = await fetch_video_info(url, tools=self.tools)
        if not isinstance(info.title, str) or not info.title.strip():
            raise UpstreamFailure(diagnostics=f"metadata dump for {url} has no title")
        filename = build_attachment_filename(info.title, audio_format)

        await self.limiter.acquire(timeout=self.admission_timeout)
        pipeline = ConversionPipeline(
            url,
            audio_format,
            tools=self.tools,
            chunk_size=self.chunk_size,
            label=f"stream:{extract_video_id(url)}",
        )
        try:
            await pipeline.start()
        except BaseException:
            self.limiter.release()
            raise
        log_event(logging.INFO, "STREAM_START", url=url, format=audio_format, filename=filename)
        return ConversionStream(
            pipeline,
            filename=filename,
            content_type=CONTENT_TYPES[audio_format],
            release=self.limiter.release,
        )
