"""Conversion endpoints: inline, background jobs and batches."""

import asyncio
import logging
import time
from collections.abc import AsyncGenerator
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response, StreamingResponse

from api.dependencies import (
    get_batch_manager,
    get_device_connection,
    get_job_manager,
    get_lanraragi_connection,
    make_artifact_uploader,
    resolve_device_target,
)
from api.schemas import (
    BatchRequest,
    BatchResponse,
    ConvertRequest,
    DeviceTargetRequest,
    JobResponse,
    UploadResponse,
)
from core.config import Settings, get_settings
from services.batch_scheduler import BatchManager
from services.connections import DeviceConnection, LanraragiConnection
from services.conversion_pipeline import ConversionArtifact, ConversionPipeline
from services.converter_engine import is_complete_png_bytes
from services.job_manager import JobManager
from services.xteink_client import DeviceUploader

logger = logging.getLogger(__name__)

router = APIRouter()

CHUNK_SIZE = 64 * 1024


def content_disposition(filename: str) -> str:
    """``attachment`` header with an ASCII fallback and the UTF-8 name."""
    fallback = filename.encode("ascii", "replace").decode("ascii").replace('"', "'")
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


async def iter_artifact(artifact: ConversionArtifact) -> AsyncGenerator[bytes, None]:
    """Yield the file in chunks, then dispose the artifact however the stream ends."""
    try:
        with artifact.file_path.open("rb") as handle:
            while True:
                chunk = await asyncio.to_thread(handle.read, CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
    finally:
        await artifact.dispose()


def artifact_response(artifact: ConversionArtifact) -> StreamingResponse:
    return StreamingResponse(
        iter_artifact(artifact),
        media_type="application/octet-stream",
        headers={
            "Content-Length": str(artifact.file_size),
            "Content-Disposition": content_disposition(artifact.download_name),
            "Cache-Control": "no-store",
        },
    )


@router.post("/batch", response_model=BatchResponse, status_code=202)
async def start_batch(
    request: BatchRequest,
    batches: BatchManager = Depends(get_batch_manager),
    device: DeviceConnection = Depends(get_device_connection),
) -> BatchResponse:
    """Convert many archives, optionally sending each result to the device."""
    if batches.job_manager.is_shutting_down:
        raise HTTPException(status_code=503, detail="Server is shutting down")
    uploader = None
    if request.mode == "upload":
        try:
            base_url, path = resolve_device_target(device, request.base_url, request.path)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        uploader = make_artifact_uploader(device, base_url, path)

    state = batches.start(
        request.archive_ids,
        request.settings.normalized(),
        mode=request.mode,
        workers=request.workers,
        upload_artifact=uploader,
    )
    return BatchResponse(batch=state)


@router.get("/batch/{batch_id}", response_model=BatchResponse)
async def get_batch(
    batch_id: str,
    batches: BatchManager = Depends(get_batch_manager),
) -> BatchResponse:
    state = batches.get(batch_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Batch not found")
    return BatchResponse(batch=state)


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    jobs: JobManager = Depends(get_job_manager),
) -> JobResponse:
    job = jobs.get_snapshot(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobResponse(job=job)


@router.get("/jobs/{job_id}/frame")
async def get_job_frame(
    job_id: str,
    jobs: JobManager = Depends(get_job_manager),
) -> Response:
    """Latest preview frame; the file is re-checked because it can be replaced at any time."""
    frame = jobs.get_live_frame(job_id)
    if frame is None:
        raise HTTPException(status_code=404, detail="Frame not available")
    try:
        data = await asyncio.to_thread(frame.path.read_bytes)
    except OSError:
        raise HTTPException(status_code=404, detail="Frame not available")
    if not is_complete_png_bytes(data):
        raise HTTPException(status_code=404, detail="Frame not available")
    return Response(content=data, media_type="image/png", headers={"Cache-Control": "no-store"})


@router.get("/jobs/{job_id}/download")
async def download_job(
    job_id: str,
    jobs: JobManager = Depends(get_job_manager),
) -> StreamingResponse:
    artifact = jobs.take_artifact(job_id)
    if artifact is None:
        raise HTTPException(status_code=409, detail="Job is not ready for download")
    return artifact_response(artifact)


@router.post("/jobs/{job_id}/upload", response_model=UploadResponse)
async def upload_job(
    job_id: str,
    request: DeviceTargetRequest | None = None,
    jobs: JobManager = Depends(get_job_manager),
    device: DeviceConnection = Depends(get_device_connection),
) -> UploadResponse:
    """Send a finished job's file to the device, replacing a file of the same name."""
    request = request or DeviceTargetRequest()
    try:
        base_url, path = resolve_device_target(device, request.base_url, request.path)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    artifact = jobs.take_artifact(job_id)
    if artifact is None:
        raise HTTPException(status_code=409, detail="Job is not ready for upload")

    file_name = artifact.download_name or f"{job_id}.xtc"
    started = time.monotonic()
    logger.info(
        "Upload start job=%s file=%s size=%d target=%s%s",
        job_id,
        file_name,
        artifact.file_size,
        base_url,
        path,
    )
    try:
        async with device.client(base_url) as client:
            await DeviceUploader(client).upload(artifact.file_path, file_name, path)
    except Exception as e:
        logger.error(
            "Upload failed job=%s file=%s elapsed_ms=%d: %s",
            job_id,
            file_name,
            (time.monotonic() - started) * 1000,
            e,
        )
        raise
    finally:
        await artifact.dispose()

    logger.info(
        "Upload done job=%s file=%s elapsed_ms=%d",
        job_id,
        file_name,
        (time.monotonic() - started) * 1000,
    )
    return UploadResponse(base_url=base_url, path=path, file_name=file_name, file_size=artifact.file_size)


@router.post("/{archive_id}/start", response_model=JobResponse)
async def start_conversion(
    archive_id: str,
    request: ConvertRequest | None = None,
    jobs: JobManager = Depends(get_job_manager),
) -> JobResponse:
    request = request or ConvertRequest()
    settings = request.settings.normalized()
    logger.info(
        "Convert job request id=%s splitMode=%s orientation=%s",
        archive_id,
        settings.split_mode,
        settings.orientation,
    )
    if jobs.is_shutting_down:
        raise HTTPException(status_code=503, detail="Server is shutting down")
    job = await jobs.start_job(archive_id, settings)
    return JobResponse(job=job)


@router.post("/{archive_id}")
async def convert_inline(
    archive_id: str,
    request: ConvertRequest | None = None,
    lanraragi: LanraragiConnection = Depends(get_lanraragi_connection),
    settings: Settings = Depends(get_settings),
) -> StreamingResponse:
    """Convert while the client waits and stream the XTC file back."""
    request = request or ConvertRequest()
    conversion_settings = request.settings.normalized()
    logger.info(
        "Convert request id=%s splitMode=%s orientation=%s",
        archive_id,
        conversion_settings.split_mode,
        conversion_settings.orientation,
    )
    pipeline = ConversionPipeline(lanraragi.client, settings)
    artifact = await pipeline.convert(archive_id, conversion_settings)
    return artifact_response(artifact)
