"""Batch conversion: bounded parallel conversions feeding a sequential upload queue."""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from services.conversion_pipeline import ConversionArtifact
from services.conversion_settings import ConversionSettings
from services.job_manager import JobManager
from services.job_state import utc_now

logger = logging.getLogger(__name__)

BatchMode = Literal["download", "upload"]
ItemStatus = Literal["pending", "converting", "queued-upload", "uploading", "completed", "failed"]

ConvertRunner = Callable[[str], Awaitable[str]]
UploadRunner = Callable[[str], Awaitable[None]]
ArtifactUploader = Callable[[ConversionArtifact], Awaitable[str]]

MAX_FINISHED_BATCHES = 20


class BatchError(Exception):
    """One archive of a batch could not be processed."""

    pass


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BatchItem(_CamelModel):
    archive_id: str
    job_id: str | None = None
    status: ItemStatus = "pending"
    error: str | None = None
    device_path: str | None = None


class BatchState(_CamelModel):
    """Live counters and the final failure report of one batch."""

    batch_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    mode: BatchMode = "download"
    total: int = 0
    completed: int = 0
    failed: int = 0
    active: int = 0
    done: bool = False
    items: list[BatchItem] = Field(default_factory=list)
    failures: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None


class BatchScheduler:
    """
    Run one batch.

    Up to ``workers`` conversions run at once. In upload mode every finished
    conversion is queued for a single upload consumer, so uploads never
    overlap while other conversions continue. A failing archive is recorded
    and the rest carry on. :meth:`run` returns once every conversion and
    every queued upload has settled.
    """

    def __init__(self, convert: ConvertRunner, upload: UploadRunner | None = None) -> None:
        self.convert = convert
        self.upload = upload

    async def run(
        self,
        archive_ids: list[str],
        mode: BatchMode = "download",
        workers: int = 4,
        state: BatchState | None = None,
    ) -> BatchState:
        if mode == "upload" and self.upload is None:
            raise ValueError("Upload mode needs an upload runner")

        state = state or BatchState(mode=mode)
        state.mode = mode
        state.total = len(archive_ids)
        state.items = [BatchItem(archive_id=archive_id) for archive_id in archive_ids]

        pending: asyncio.Queue[BatchItem] = asyncio.Queue()
        for item in state.items:
            pending.put_nowait(item)
        uploads: asyncio.Queue[BatchItem | None] = asyncio.Queue()

        worker_count = max(1, min(workers, len(archive_ids)))
        logger.info(
            "Batch %s started: %d archive(s), %d worker(s), mode=%s",
            state.batch_id,
            state.total,
            worker_count,
            mode,
        )

        uploader: asyncio.Task[None] | None = None
        if self.upload is not None and mode == "upload":
            uploader = asyncio.create_task(
                self._upload_consumer(state, uploads, self.upload),
                name=f"batch-upload-{state.batch_id}",
            )
        try:
            await asyncio.gather(
                *(
                    self._conversion_worker(state, pending, uploads, mode)
                    for _ in range(worker_count)
                )
            )
        finally:
            if uploader is not None:
                uploads.put_nowait(None)
                await uploader

        state.done = True
        state.finished_at = utc_now()
        logger.info(
            "Batch %s finished: %d completed, %d failed",
            state.batch_id,
            state.completed,
            state.failed,
        )
        return state

    async def _conversion_worker(
        self,
        state: BatchState,
        pending: "asyncio.Queue[BatchItem]",
        uploads: "asyncio.Queue[BatchItem | None]",
        mode: BatchMode,
    ) -> None:
        while True:
            try:
                item = pending.get_nowait()
            except asyncio.QueueEmpty:
                return

            item.status = "converting"
            state.active += 1
            try:
                item.job_id = await self.convert(item.archive_id)
            except Exception as e:
                self._record_failure(state, item, e)
                continue
            finally:
                state.active = max(0, state.active - 1)

            if mode == "upload":
                item.status = "queued-upload"
                uploads.put_nowait(item)
            else:
                item.status = "completed"
                state.completed += 1

    async def _upload_consumer(
        self,
        state: BatchState,
        uploads: "asyncio.Queue[BatchItem | None]",
        upload: UploadRunner,
    ) -> None:
        while True:
            item = await uploads.get()
            if item is None:
                return
            item.status = "uploading"
            try:
                await upload(item.job_id or "")
            except Exception as e:
                self._record_failure(state, item, e)
                continue
            item.status = "completed"
            state.completed += 1

    def _record_failure(self, state: BatchState, item: BatchItem, error: Exception) -> None:
        message = str(error) or error.__class__.__name__
        logger.warning("Batch %s: archive %s failed: %s", state.batch_id, item.archive_id, message)
        item.status = "failed"
        item.error = message
        state.failed += 1
        state.failures.append(f"{item.archive_id}: {message}")


class BatchManager:
    """Starts batches on top of the job manager and keeps their state for polling."""

    def __init__(self, job_manager: JobManager, max_parallel: int = 4) -> None:
        self.job_manager = job_manager
        self.max_parallel = max_parallel
        self._batches: dict[str, BatchState] = {}
        self._tasks: dict[str, asyncio.Task[BatchState]] = {}

    async def convert_archive(self, archive_id: str, settings: ConversionSettings) -> str:
        """Run one conversion job to completion; returns its job id."""
        snapshot = await self.job_manager.start_job(archive_id, settings)
        final = await self.job_manager.wait_for(snapshot.job_id)
        if final is None:
            raise BatchError("Conversion job disappeared before completion")
        if final.status != "completed":
            raise BatchError(final.error or "Conversion failed")
        return snapshot.job_id

    async def upload_job(self, job_id: str, upload_artifact: ArtifactUploader) -> str:
        artifact = self.job_manager.take_artifact(job_id)
        if artifact is None:
            raise BatchError(f"Conversion output for job {job_id} is not available")
        try:
            return await upload_artifact(artifact)
        finally:
            await artifact.dispose()

    def start(
        self,
        archive_ids: list[str],
        settings: ConversionSettings,
        mode: BatchMode = "download",
        workers: int | None = None,
        upload_artifact: ArtifactUploader | None = None,
    ) -> BatchState:
        if mode == "upload" and upload_artifact is None:
            raise ValueError("Upload mode needs a device uploader")

        archive_ids = list(dict.fromkeys(archive_ids))
        state = BatchState(mode=mode, total=len(archive_ids))
        state.items = [BatchItem(archive_id=archive_id) for archive_id in archive_ids]

        async def convert(archive_id: str) -> str:
            return await self.convert_archive(archive_id, settings)

        upload: UploadRunner | None = None
        if mode == "upload" and upload_artifact is not None:
            deliver = upload_artifact

            async def upload_one(job_id: str) -> None:
                device_path = await self.upload_job(job_id, deliver)
                for item in state.items:
                    if item.job_id == job_id:
                        item.device_path = device_path

            upload = upload_one

        scheduler = BatchScheduler(convert, upload)
        worker_count = min(workers or self.max_parallel, self.max_parallel)

        self._prune()
        self._batches[state.batch_id] = state
        self._tasks[state.batch_id] = asyncio.create_task(
            scheduler.run(archive_ids, mode=mode, workers=worker_count, state=state),
            name=f"batch-{state.batch_id}",
        )
        return state.model_copy(deep=True)

    def get(self, batch_id: str) -> BatchState | None:
        state = self._batches.get(batch_id)
        return state.model_copy(deep=True) if state else None

    async def shutdown(self) -> None:
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def _prune(self) -> None:
        finished = [batch_id for batch_id, state in self._batches.items() if state.done]
        for batch_id in finished[: max(0, len(finished) - MAX_FINISHED_BATCHES)]:
            self._batches.pop(batch_id, None)
            self._tasks.pop(batch_id, None)
