"""Async conversion job manager: background pipelines, live snapshots, artifact handoff."""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from services.conversion_pipeline import ConversionArtifact
from services.conversion_settings import ConversionSettings
from services.events import FrameCaptured, ProgressCallback, ProgressEvent
from services.job_registry import JobRecord, JobRegistry, TtlReclaimer
from services.job_state import (
    DEFAULT_PROGRESS_POLICY,
    ConversionJob,
    ProgressPolicy,
    apply_event,
    update_progress,
    utc_now,
)

logger = logging.getLogger(__name__)

ConversionRunner = Callable[[str, ConversionSettings, ProgressCallback], Awaitable[ConversionArtifact]]

DEFAULT_JOB_TTL_SECONDS = 15 * 60


@dataclass(frozen=True)
class LiveFrame:
    """The most recent preview frame of a job."""

    path: Path
    mtime: float


class JobManager:
    """
    Runs conversion jobs in the background and tracks their state.

    Jobs move queued -> running -> completed|failed. Completed and failed
    records are kept for ``ttl_seconds`` unless the artifact is taken first.
    """

    def __init__(
        self,
        run_conversion: ConversionRunner,
        ttl_seconds: float = DEFAULT_JOB_TTL_SECONDS,
        policy: ProgressPolicy = DEFAULT_PROGRESS_POLICY,
        registry: JobRegistry | None = None,
        reclaimer: TtlReclaimer | None = None,
    ) -> None:
        """
        Initialize job manager.

        Args:
            run_conversion: Coroutine running one archive through the pipeline.
            ttl_seconds: Lifetime of finished jobs that nobody collects.
            policy: Progress thresholds.
            registry: Job store (a fresh one by default).
            reclaimer: TTL reclaimer (one calling :meth:`expire_job` by default).
        """
        self._run_conversion = run_conversion
        self.ttl_seconds = ttl_seconds
        self.policy = policy
        self.registry = registry or JobRegistry()
        self.reclaimer = reclaimer or TtlReclaimer(self.expire_job)
        self._shutting_down = False

        logger.info("JobManager initialized with ttl=%.0fs", ttl_seconds)

    def start(self) -> None:
        self.reclaimer.start()

    async def start_job(self, archive_id: str, settings: ConversionSettings) -> ConversionJob:
        """
        Create a job and run it in the background.

        Returns:
            The initial ``queued`` snapshot.
        """
        if self._shutting_down:
            raise RuntimeError("Job manager is shutting down")

        job = ConversionJob(job_id=str(uuid.uuid4()), archive_id=archive_id)
        record = JobRecord(job=job)
        self.registry.add(record)
        snapshot = job.model_copy(deep=True)

        record.task = asyncio.create_task(
            self._execute(record, settings),
            name=f"convert-{job.job_id}",
        )
        logger.info("Queued conversion job %s for archive %s", job.job_id, archive_id)
        return snapshot

    def get_snapshot(self, job_id: str) -> ConversionJob | None:
        record = self.registry.get(job_id)
        return record.job.model_copy(deep=True) if record else None

    def get_live_frame(self, job_id: str) -> LiveFrame | None:
        record = self.registry.get(job_id)
        if record is None or record.frame_path is None:
            return None
        try:
            stat = record.frame_path.stat()
        except OSError:
            return None
        return LiveFrame(path=record.frame_path, mtime=stat.st_mtime)

    def take_artifact(self, job_id: str) -> ConversionArtifact | None:
        """
        Hand the artifact over to the caller, at most once per job.

        The pending TTL is cancelled and the job record removed; the caller
        owns disposal from here on.
        """
        record = self.registry.get(job_id)
        if record is None or record.job.status != "completed" or record.artifact is None:
            return None

        self.reclaimer.cancel(job_id)
        artifact = record.artifact
        record.artifact = None
        self.registry.remove(job_id)
        logger.info("Artifact taken for job %s (%s)", job_id, artifact.download_name)
        return artifact

    async def wait_for(self, job_id: str) -> ConversionJob | None:
        """Wait until the job settles and return its final snapshot."""
        record = self.registry.get(job_id)
        if record is None:
            return None
        if record.task is not None and not record.task.done():
            await asyncio.gather(record.task, return_exceptions=True)
        return record.job.model_copy(deep=True)

    def apply_event(self, record: JobRecord, event: ProgressEvent) -> None:
        if not apply_event(record.job, event, self.policy):
            return
        if isinstance(event, FrameCaptured):
            record.frame_path = event.path

    async def expire_job(self, job_id: str) -> None:
        """Drop a job and dispose whatever artifact it still holds."""
        record = self.registry.remove(job_id)
        if record is None:
            return
        try:
            if record.artifact is not None:
                await record.artifact.dispose()
        finally:
            record.artifact = None
            logger.info("Reclaimed job %s (%s)", job_id, record.job.status)

    def get_running_count(self) -> int:
        return sum(1 for record in self.registry if record.task is not None and not record.task.done())

    async def shutdown(self, timeout: float = 30.0) -> None:
        """
        Cancel running jobs, stop the reclaimer and dispose every held artifact.

        Args:
            timeout: Maximum time to wait for cancelled jobs (seconds).
        """
        if self._shutting_down:
            logger.warning("Shutdown already in progress")
            return
        self._shutting_down = True

        tasks = [record.task for record in self.registry if record.task is not None and not record.task.done()]
        if tasks:
            logger.info("Shutting down %d running job(s)...", len(tasks))
            for task in tasks:
                task.cancel()
            try:
                await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Timeout waiting for jobs to complete. %d job(s) still running.",
                    sum(1 for t in tasks if not t.done()),
                )

        await self.reclaimer.stop()

        for record in self.registry:
            self.reclaimer.cancel(record.job.job_id)
            await self.expire_job(record.job.job_id)

        logger.info("Job manager shutdown complete")

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    async def _execute(self, record: JobRecord, settings: ConversionSettings) -> None:
        job = record.job
        job.status = "running"
        job.stage = "starting"
        job.message = "Starting conversion"
        job.updated_at = utc_now()
        update_progress(job, self.policy)

        try:
            artifact = await self._run_conversion(
                job.archive_id,
                settings,
                lambda event: self.apply_event(record, event),
            )
        except asyncio.CancelledError:
            self._fail(record, "Conversion cancelled")
            raise
        except Exception as e:
            logger.exception("Conversion job %s failed", job.job_id)
            self._fail(record, str(e) or e.__class__.__name__)
            self.reclaimer.schedule(job.job_id, self.ttl_seconds)
            return

        if job.job_id not in self.registry or self._shutting_down:
            await artifact.dispose()
            return

        record.artifact = artifact
        job.status = "completed"
        job.stage = "completed"
        job.message = "Conversion complete, ready to download"
        job.download_name = artifact.download_name
        job.file_size = artifact.file_size
        job.updated_at = utc_now()
        update_progress(job, self.policy)
        self.reclaimer.schedule(job.job_id, self.ttl_seconds)
        logger.info("Conversion job %s completed (%d bytes)", job.job_id, artifact.file_size)

    def _fail(self, record: JobRecord, message: str) -> None:
        job = record.job
        job.status = "failed"
        job.stage = "failed"
        job.error = message
        job.message = message
        job.updated_at = utc_now()
