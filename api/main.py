#!/usr/bin/env python3
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException

from config.settings import (
    ADMISSION_TIMEOUT_SECONDS,
    CLEANUP_DELAY_SECONDS,
    MAX_CONCURRENT_PIPELINES,
    STREAM_CHUNK_SIZE,
)
from engine.conversions import (
    AsyncConversionService,
    PipelineLimiter,
    StreamingConversionService,
)
from engine.errors import ConversionError, InputError
from engine.job_store import InMemoryJobStore
from engine.json_utils import log_event, safe_json
from engine.paths import build_engine_paths, ensure_dir
from engine.pipeline import ToolCommands
from engine.runtime import get_runtime_info
from input.url_validator import is_valid_video_url
from media.video_info import fetch_video_info

APP_NAME = "Audiopipe API"
LOG_FILENAME = "audiopipe.log"
UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred. Please try again."
_DIAGNOSTICS_LOG_CHARS = 2000

_NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def _env_or_default(name, default):
    value = os.environ.get(name)
    return value if value else default


def _setup_logging(log_dir):
    ensure_dir(log_dir)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, LOG_FILENAME)
    root.setLevel(logging.INFO)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                return log_path
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    file_handler.setLevel(logging.INFO)
    root.addHandler(file_handler)
    return log_path


class InfoRequest(BaseModel):
    url: Any = None


class ConvertRequest(BaseModel):
    url: Any = None
    format: Any = None


class SafeJSONResponse(JSONResponse):
    def render(self, content):
        return json.dumps(
            safe_json(content),
            ensure_ascii=False,
            allow_nan=False,
            separators=(",", ":"),
        ).encode("utf-8")


def _error_response(status_code, message):
    return SafeJSONResponse({"error": message}, status_code=status_code)


router = APIRouter(prefix="/api")


@router.post("/info")
async def api_info(request: Request, payload: InfoRequest):
    url = payload.url
    if not isinstance(url, str) or not is_valid_video_url(url):
        raise InputError("Invalid YouTube URL")
    info = await fetch_video_info(url, tools=request.app.state.tools)
    return info.to_dict()


@router.post("/convert-stream")
async def api_convert_stream(request: Request, payload: ConvertRequest):
    service = request.app.state.streaming_service
    stream = await service.open_stream(payload.url, payload.format)
    return StreamingResponse(
        stream.iter_bytes(),
        media_type=stream.content_type,
        headers=stream.headers(),
        background=BackgroundTask(stream.close),
    )


@router.post("/convert", status_code=202)
async def api_convert(request: Request, payload: ConvertRequest):
    service = request.app.state.conversion_service
    job_id = await service.start_conversion(payload.url, payload.format)
    return {"conversionId": job_id}


@router.get("/status/{job_id}")
async def api_status(request: Request, job_id: str):
    job = request.app.state.conversion_service.get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Conversion not found")
    return job.to_dict()


@router.get("/download/{job_id}")
async def api_download(request: Request, job_id: str):
    artifact = await request.app.state.conversion_service.download(job_id)
    if artifact is None:
        raise HTTPException(status_code=404, detail="File not found or conversion not complete")
    headers = {
        "Content-Disposition": f'attachment; filename="{artifact.filename}"',
        **_NO_CACHE_HEADERS,
    }
    return Response(content=artifact.content, media_type=artifact.content_type, headers=headers)


@router.post("/jobs/{job_id}/cancel")
async def api_cancel_job(request: Request, job_id: str):
    """
    Cancel a running background conversion.

    The job's subprocesses are terminated and the job is left in the error
    state. Unknown ids are 404; finished jobs are 409.
    """
    job = await request.app.state.conversion_service.cancel(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Conversion not found")
    return job.to_dict()


@router.get("/version")
async def api_version():
    return get_runtime_info()


def _install_exception_handlers(app):
    @app.exception_handler(ConversionError)
    async def conversion_error_handler(request: Request, exc: ConversionError):
        if exc.diagnostics:
            logging.warning(
                "Request %s %s failed: %s | %s",
                request.method,
                request.url.path,
                exc.message,
                exc.diagnostics[-_DIAGNOSTICS_LOG_CHARS:],
            )
        return _error_response(exc.status_code, exc.message)

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        return _error_response(exc.status_code, exc.detail)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return _error_response(400, InputError.default_message)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logging.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error_response(500, UNEXPECTED_ERROR_MESSAGE)


def create_app(
    *,
    tools=None,
    downloads_dir=None,
    log_dir=None,
    cleanup_delay=CLEANUP_DELAY_SECONDS,
    max_concurrent=MAX_CONCURRENT_PIPELINES,
    admission_timeout=ADMISSION_TIMEOUT_SECONDS,
    chunk_size=STREAM_CHUNK_SIZE,
):
    """Build the API application; overrides are for embedding and tests."""

    @asynccontextmanager
    async def lifespan(app):
        await startup(app)
        try:
            yield
        finally:
            await shutdown(app)

    async def startup(app):
        app.state.paths = build_engine_paths(downloads_dir=downloads_dir, log_dir=log_dir)
        app.state.log_path = _setup_logging(app.state.paths.log_dir)
        app.state.tools = tools or ToolCommands()
        app.state.job_store = InMemoryJobStore()
        app.state.scheduler = BackgroundScheduler(timezone="UTC")
        app.state.scheduler.start()
        app.state.limiter = PipelineLimiter(max_concurrent)
        app.state.conversion_service = AsyncConversionService(
            app.state.job_store,
            downloads_dir=app.state.paths.downloads_dir,
            scheduler=app.state.scheduler,
            tools=app.state.tools,
            limiter=app.state.limiter,
            cleanup_delay=cleanup_delay,
        )
        app.state.streaming_service = StreamingConversionService(
            tools=app.state.tools,
            limiter=app.state.limiter,
            admission_timeout=admission_timeout,
            chunk_size=chunk_size,
        )
        app.state.conversion_service.purge_artifacts()
        log_event(
            logging.INFO,
            "APP_STARTED",
            downloads_dir=app.state.paths.downloads_dir,
            log_path=app.state.log_path,
            max_concurrent=app.state.limiter.max_concurrent,
            cleanup_delay=cleanup_delay,
        )

    async def shutdown(app):
        service = getattr(app.state, "conversion_service", None)
        if service is not None:
            await service.shutdown()
        scheduler = getattr(app.state, "scheduler", None)
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=False)
        logging.info("Audiopipe shutdown complete")

    app = FastAPI(
        title=APP_NAME,
        description="Audiopipe API for converting online videos to MP3 or WAV audio.",
        default_response_class=SafeJSONResponse,
        lifespan=lifespan,
    )
    app.include_router(router)
    _install_exception_handlers(app)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    host = _env_or_default("AUDIOPIPE_HOST", "127.0.0.1")
    port = int(_env_or_default("AUDIOPIPE_PORT", "8000"))
    uvicorn.run("api.main:app", host=host, port=port, reload=False)
