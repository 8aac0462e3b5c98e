#!/usr/bin/env python3
"""HTTP surface for analyzing media URLs and running download jobs."""

import logging
import os
from contextlib import asynccontextmanager
from urllib.parse import quote

import anyio
from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from engine.analyzer import analyze_url
from engine.config import load_config
from engine.errors import ExtractionError, JobNotFoundError, ValidationError
from engine.jobs import build_job_service
from engine.log_events import setup_logging
from engine.paths import build_engine_paths, resolve_config_path
from engine.runtime import get_runtime_info

APP_NAME = "vidgrab API"

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


class AnalyzeRequest(BaseModel):
    url: str


class DownloadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_url: str | None = Field(default=None, alias="sourceUrl")
    youtube_url: str | None = Field(default=None, alias="youtubeUrl")
    title: str | None = None
    duration: str | int | float | None = None
    thumbnail: str | None = None
    channel: str | None = None
    views: str | int | None = None
    publish_date: str | None = Field(default=None, alias="publishDate")
    format: str | None = None

    def submission_metadata(self):
        return {
            "title": self.title,
            "duration": self.duration,
            "thumbnail": self.thumbnail,
            "channel": self.channel,
            "views": self.views,
            "publishDate": self.publish_date,
        }


def _env_or_default(name, default):
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _safe_filename(name):
    cleaned = name.replace('"', "'").replace("\n", " ").replace("\r", " ").strip()
    return cleaned or "download"


def _content_disposition(filename):
    filename = _safe_filename(filename)
    ascii_name = filename.encode("ascii", "ignore").decode("ascii").strip() or "download"
    if ascii_name == filename:
        return f'attachment; filename="{filename}"'
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename)}"


def _iter_file(path, chunk_size=1024 * 1024):
    with open(path, "rb") as handle:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                break
            yield chunk


def _service(request: Request):
    return request.app.state.service


@router.post("/analyze")
async def api_analyze(payload: AnalyzeRequest, request: Request):
    url = (payload.url or "").strip()
    if not url:
        raise ValidationError("URL is required")
    _service(request).validate_source_url(url)
    config = request.app.state.config
    return await anyio.to_thread.run_sync(analyze_url, url, config)


@router.post("/download", status_code=202)
async def api_submit_download(payload: DownloadRequest, request: Request):
    source_url = payload.source_url or payload.youtube_url
    record = await _service(request).submit(
        source_url,
        metadata=payload.submission_metadata(),
        requested_format=payload.format,
    )
    return record.to_dict()


@router.get("/download/{job_id}")
async def api_download_status(job_id: str, request: Request):
    record = await _service(request).get_status(job_id)
    return record.to_dict()


@router.get("/downloads")
async def api_list_downloads(request: Request):
    records = await _service(request).list_all()
    return [record.to_dict() for record in records]


@router.get("/download/{job_id}/file")
async def api_download_file(job_id: str, request: Request):
    output = await _service(request).fetch_output_file(job_id)
    headers = {"Content-Disposition": _content_disposition(output.filename)}
    return StreamingResponse(_iter_file(output.path), media_type=output.media_type, headers=headers)


@router.post("/download/{job_id}/cancel")
async def api_cancel_download(job_id: str, request: Request):
    record = await _service(request).cancel(job_id)
    return record.to_dict()


@router.get("/version")
async def api_version(request: Request):
    config = request.app.state.config or {}
    return get_runtime_info(config.get("ytdlp_path") or "yt-dlp")


async def _bad_request(request: Request, exc: Exception):
    return JSONResponse(status_code=400, content={"message": str(exc)})


async def _request_invalid(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        loc = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{loc}: {first.get('msg')}" if loc else str(first.get("msg"))
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"message": message})


async def _not_found(request: Request, exc: JobNotFoundError):
    return JSONResponse(status_code=404, content={"message": str(exc)})


async def _internal_error(request: Request, exc: Exception):
    logger.error("Unhandled error for %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


def _read_config():
    try:
        path = resolve_config_path(os.environ.get("VIDGRAB_CONFIG"))
    except ValueError as exc:
        logger.error("Invalid config override: %s", exc)
        path = resolve_config_path(None)
    config = load_config(path)
    logger.info("config loaded from %s (%d keys)", path, len(config))
    return config


def create_app(*, config=None, paths=None, service_builder=None):
    """Build the FastAPI application.

    ``config`` defaults to the JSON file named by ``VIDGRAB_CONFIG``;
    ``service_builder(config, paths=...)`` defaults to ``build_job_service``.
    Configuration errors surface while the app starts.
    """
    builder = service_builder or build_job_service

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_paths = paths or build_engine_paths()
        setup_logging(app_paths.log_dir)
        app_config = _read_config() if config is None else dict(config)
        app.state.paths = app_paths
        app.state.config = app_config
        app.state.service = builder(app_config, paths=app_paths)
        try:
            yield
        finally:
            await app.state.service.shutdown()

    app = FastAPI(
        title=APP_NAME,
        description="Analyze media URLs and download them through a chain of fallback strategies.",
        lifespan=lifespan,
    )
    app.add_exception_handler(ValidationError, _bad_request)
    app.add_exception_handler(ExtractionError, _bad_request)
    app.add_exception_handler(RequestValidationError, _request_invalid)
    app.add_exception_handler(JobNotFoundError, _not_found)
    app.add_exception_handler(Exception, _internal_error)
    app.include_router(router)
    return app


app = create_app()


def main():
    import uvicorn

    host = _env_or_default("VIDGRAB_HOST", "127.0.0.1")
    port = int(_env_or_default("VIDGRAB_PORT", "8000"))
    uvicorn.run("api.main:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
