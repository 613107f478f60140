"""Conversion job snapshot and the rules that fold progress events into it."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from services.events import (
    ArchiveReady,
    ConversionDone,
    ConverterSummary,
    FrameCaptured,
    PageDone,
    PagesDiscovered,
    ProgressEvent,
    StageChanged,
)

JobStatus = Literal["queued", "running", "completed", "failed"]
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobPage(BaseModel):
    """Per-page download state."""

    label: str = ""
    done: bool = False


class ConversionJob(BaseModel):
    """Poll response for a conversion job. Serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    job_id: str
    archive_id: str
    status: JobStatus = "queued"
    stage: str = "queued"
    message: str = "Queued"
    progress: float = 0.0
    total_pages: int = 0
    completed_pages: int = 0
    pages: list[JobPage] = Field(default_factory=list)
    current_page_path: str | None = None
    current_converted_frame_label: str | None = None
    converted_frame_version: int = 0
    error: str | None = None
    download_name: str | None = None
    file_size: int | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class ProgressPolicy:
    """
    Thresholds for turning stages and page counts into a progress fraction.

    Page downloads fill up to ``page_fraction_cap``; reaching the converter
    stage lifts progress to ``converter_floor``. Without page counts, the
    archive-download and running floors apply instead.
    """

    page_fraction_cap: float = 0.7
    converter_floor: float = 0.85
    archive_download_floor: float = 0.35
    running_floor: float = 0.1
    converter_stage: str = "cbz2xtc"
    archive_download_stage: str = "archive-download"


DEFAULT_PROGRESS_POLICY = ProgressPolicy()


def update_progress(job: ConversionJob, policy: ProgressPolicy = DEFAULT_PROGRESS_POLICY) -> None:
    """Recompute ``job.progress``; never lowers it."""
    if job.status == "completed":
        job.progress = 1.0
        return
    if job.status == "failed":
        return

    floor = 0.0
    if job.total_pages > 0:
        floor = min(
            policy.page_fraction_cap,
            job.completed_pages / job.total_pages * policy.page_fraction_cap,
        )
        if job.stage == policy.converter_stage:
            floor = max(floor, policy.converter_floor)
    elif job.stage == policy.converter_stage:
        floor = policy.converter_floor
    elif job.stage == policy.archive_download_stage:
        floor = policy.archive_download_floor
    elif job.status == "running":
        floor = policy.running_floor

    job.progress = max(job.progress, floor)


def apply_event(
    job: ConversionJob,
    event: ProgressEvent,
    policy: ProgressPolicy = DEFAULT_PROGRESS_POLICY,
) -> bool:
    """
    Fold one pipeline event into ``job``.

    Returns:
        True when the event was applied; events arriving after the job
        reached a terminal status are dropped.
    """
    if job.is_terminal:
        return False

    job.updated_at = utc_now()

    if isinstance(event, StageChanged):
        job.stage = event.stage
        job.message = event.message
    elif isinstance(event, PagesDiscovered):
        _grow_pages(job, event.total, event.labels)
        job.message = f"Found {event.total} pages"
    elif isinstance(event, PageDone):
        _grow_pages(job, event.total, [])
        slot = job.pages[event.index - 1] if 0 < event.index <= len(job.pages) else None
        if slot is not None:
            slot.done = True
            if not slot.label:
                slot.label = event.label
        job.completed_pages = sum(1 for page in job.pages if page.done)
        job.current_page_path = event.label
        job.message = f"Downloaded page {event.index}/{event.total}"
    elif isinstance(event, ArchiveReady):
        job.message = f"Built conversion archive with {event.total} pages"
    elif isinstance(event, FrameCaptured):
        job.current_converted_frame_label = event.label
        job.converted_frame_version += 1
        job.message = f"Converting frame {event.label}"
    elif isinstance(event, ConverterSummary):
        job.message = event.summary
    elif isinstance(event, ConversionDone):
        job.status = "completed"
        job.stage = "completed"
        job.message = f"Conversion complete ({event.file_size} bytes)"
        job.download_name = event.download_name
        job.file_size = event.file_size

    update_progress(job, policy)
    return True


def _grow_pages(job: ConversionJob, total: int, labels: list[str]) -> None:
    """Extend the page list towards ``total``; existing entries are kept."""
    job.total_pages = max(job.total_pages, total)
    for index, label in enumerate(labels[: job.total_pages]):
        if index < len(job.pages):
            if not job.pages[index].label:
                job.pages[index].label = label
        else:
            job.pages.append(JobPage(label=label))
    while len(job.pages) < job.total_pages:
        job.pages.append(JobPage())
