"""Progress events emitted by the conversion pipeline."""

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class StageChanged:
    """The pipeline entered a new phase."""

    stage: str
    message: str


@dataclass(frozen=True)
class PagesDiscovered:
    """The page list that is about to be assembled is known."""

    total: int
    labels: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PageDone:
    """One page finished downloading. ``index`` is 1-based."""

    index: int
    total: int
    label: str


@dataclass(frozen=True)
class ArchiveReady:
    """The conversion input archive has been packed."""

    total: int


@dataclass(frozen=True)
class FrameCaptured:
    """cbz2xtc wrote a new intermediate frame; ``path`` is the preview copy."""

    path: Path
    label: str


@dataclass(frozen=True)
class ConverterSummary:
    """Condensed cbz2xtc output after a successful run."""

    summary: str


@dataclass(frozen=True)
class ConversionDone:
    """The output file is in place."""

    file_size: int
    download_name: str


ProgressEvent = (
    StageChanged
    | PagesDiscovered
    | PageDone
    | ArchiveReady
    | FrameCaptured
    | ConverterSummary
    | ConversionDone
)

ProgressCallback = Callable[[ProgressEvent], None]


def emit(callback: ProgressCallback | None, event: ProgressEvent) -> None:
    """Forward an event to an optional callback."""
    if callback is not None:
        callback(event)
