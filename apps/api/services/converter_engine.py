"""cbz2xtc conversion engine wrapper with live frame preview."""

import asyncio
import logging
import os
import re
import shutil
import time
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from dataclasses import dataclass
from pathlib import Path

from core.config import Settings, get_settings
from services.conversion_settings import ConversionSettings
from services.events import ConverterSummary, FrameCaptured, ProgressCallback, emit

logger = logging.getLogger(__name__)

PNG_SIGNATURE = bytes([0x89, 0x50, 0x4E, 0x47, 0x0D, 0x0A, 0x1A, 0x0A])
PNG_IEND_CHUNK = bytes([0x00, 0x00, 0x00, 0x00, 0x49, 0x45, 0x4E, 0x44, 0xAE, 0x42, 0x60, 0x82])

OUTPUT_DIR_NAME = "xtc_output"
DELIVER_DIR_NAME = "deliver"
PREVIEW_DIR_NAME = ".frame_preview"
FRAME_SCAN_EXCLUDED = frozenset({OUTPUT_DIR_NAME, DELIVER_DIR_NAME, PREVIEW_DIR_NAME})
FRAME_SCAN_MAX_DEPTH = 5

SUMMARY_PATTERN = re.compile(r"page|extract|split|output|xtc|done|warning|error", re.IGNORECASE)
SUMMARY_MAX_LINES = 8
SUMMARY_MAX_CHARS = 1400
FAILURE_OUTPUT_CHARS = 1000


class ConverterError(Exception):
    """Base exception for converter errors."""

    pass


class ConverterNotFoundError(ConverterError):
    """A configured tool path does not exist."""

    pass


class ConversionError(ConverterError):
    """Raised when a conversion operation fails."""

    pass


def is_complete_png_bytes(data: bytes) -> bool:
    """True when ``data`` starts with the PNG signature and ends with the IEND chunk."""
    if len(data) < len(PNG_SIGNATURE) + len(PNG_IEND_CHUNK):
        return False
    return data.startswith(PNG_SIGNATURE) and data.endswith(PNG_IEND_CHUNK)


def is_complete_png(path: Path, size_hint: int | None = None) -> bool:
    """Check signature and trailer without reading the whole file."""
    try:
        with path.open("rb") as fh:
            size = size_hint if size_hint and size_hint > 0 else os.fstat(fh.fileno()).st_size
            if size < len(PNG_SIGNATURE) + len(PNG_IEND_CHUNK):
                return False
            head = fh.read(len(PNG_SIGNATURE))
            fh.seek(size - len(PNG_IEND_CHUNK))
            tail = fh.read(len(PNG_IEND_CHUNK))
    except OSError:
        return False
    return head == PNG_SIGNATURE and tail == PNG_IEND_CHUNK


@dataclass(frozen=True)
class FrameCandidate:
    """A PNG found in the workspace."""

    path: Path
    mtime: float
    size: int

    @property
    def key(self) -> tuple[str, float, int]:
        return (str(self.path), self.mtime, self.size)


def list_frame_candidates(root: Path) -> list[FrameCandidate]:
    """All PNGs under ``root`` (output/staging dirs excluded), oldest first."""
    frames: list[FrameCandidate] = []

    def visit(directory: Path, depth: int) -> None:
        if depth > FRAME_SCAN_MAX_DEPTH:
            return
        try:
            entries = list(os.scandir(directory))
        except OSError:
            return
        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=False):
                    if entry.name not in FRAME_SCAN_EXCLUDED:
                        visit(Path(entry.path), depth + 1)
                    continue
                if not entry.is_file() or not entry.name.lower().endswith(".png"):
                    continue
                stat = entry.stat()
            except OSError:
                # Vanished between listing and stat.
                continue
            frames.append(FrameCandidate(path=Path(entry.path), mtime=stat.st_mtime, size=stat.st_size))

    visit(root, 0)
    frames.sort(key=lambda frame: (frame.mtime, str(frame.path)))
    return frames


class FrameWatcher:
    """
    Turn PNGs that cbz2xtc writes into validated, de-duplicated preview frames.

    A candidate is accepted at most once per (path, mtime, size), only after
    it is ``min_age`` seconds old and passes the PNG completeness check. The
    accepted file is copied into a private preview directory; the previous
    preview copy is removed.
    """

    def __init__(
        self,
        workspace: Path,
        min_age_ms: int = 350,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.workspace = workspace
        self.preview_dir = workspace / PREVIEW_DIR_NAME
        self.min_age = min_age_ms / 1000.0
        self._clock = clock
        self._emitted: set[tuple[str, float, int]] = set()
        self._last_preview: Path | None = None

    @property
    def last_preview(self) -> Path | None:
        return self._last_preview

    def poll_once(self) -> FrameCaptured | None:
        """Accept at most one new frame."""
        self.preview_dir.mkdir(parents=True, exist_ok=True)
        now = self._clock()

        source: FrameCandidate | None = None
        for candidate in list_frame_candidates(self.workspace):
            if candidate.key in self._emitted:
                continue
            if now - candidate.mtime < self.min_age:
                continue
            if not is_complete_png(candidate.path, candidate.size):
                continue
            source = candidate
            self._emitted.add(candidate.key)
            break
        if source is None:
            return None

        preview = self.preview_dir / f"{int(now * 1000)}-{source.path.name}"
        try:
            shutil.copyfile(source.path, preview)
        except OSError:
            logger.debug("frame copy failed for %s", source.path)
            return None
        if not is_complete_png(preview):
            preview.unlink(missing_ok=True)
            return None

        if self._last_preview is not None and self._last_preview != preview:
            self._last_preview.unlink(missing_ok=True)
        self._last_preview = preview
        return FrameCaptured(path=preview, label=source.path.name)

    async def watch(self, stop: asyncio.Event, interval: float) -> AsyncIterator[FrameCaptured]:
        """Poll until ``stop`` is set, yielding each accepted frame."""
        while not stop.is_set():
            frame = await asyncio.to_thread(self.poll_once)
            if frame is not None:
                yield frame
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass


def summarize_output(stdout: str, stderr: str) -> str:
    """Keep the last few progress-relevant lines of the tool output."""
    lines = [line.strip() for line in f"{stdout}\n{stderr}".splitlines() if line.strip()]
    if not lines:
        return ""
    interesting = [line for line in lines if SUMMARY_PATTERN.search(line)]
    picked = (interesting or lines)[-SUMMARY_MAX_LINES:]
    return " | ".join(picked)[:SUMMARY_MAX_CHARS]


@dataclass
class ConverterRun:
    """Captured output of a successful cbz2xtc run."""

    stdout: str
    stderr: str
    summary: str


class ConverterEngine:
    """Wrapper for cbz2xtc script execution."""

    def __init__(self, settings: Settings | None = None) -> None:
        """Initialize converter engine."""
        self.settings = settings or get_settings()
        self.script_path = Path(self.settings.cbz2xtc_path)
        self.png2xtc_path = Path(self.settings.png2xtc_path) if self.settings.png2xtc_path else None

        if not self.script_path.exists():
            logger.warning("cbz2xtc script not found at %s", self.script_path)

    def ensure_available(self) -> None:
        """
        Fail fast when a required tool path is missing.

        Raises:
            ConverterNotFoundError: cbz2xtc (or a configured png2xtc) is absent.
        """
        if not self.script_path.exists():
            raise ConverterNotFoundError(f"cbz2xtc not found at {self.script_path}")
        if self.png2xtc_path is not None and not self.png2xtc_path.exists():
            raise ConverterNotFoundError(f"png2xtc not found at {self.png2xtc_path}")

    def build_command(self, workspace: Path, conversion_settings: ConversionSettings) -> list[str]:
        """
        Build the cbz2xtc command.

        cbz2xtc converts every CBZ in ``workspace`` and writes results to
        ``workspace/xtc_output``.
        """
        return [
            self.settings.python_bin,
            str(self.script_path),
            str(workspace),
            *conversion_settings.to_cbz2xtc_args(),
        ]

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self.png2xtc_path is not None:
            env["PNG2XTC_PATH"] = str(self.png2xtc_path)
        return env

    async def convert(
        self,
        workspace: Path,
        conversion_settings: ConversionSettings,
        on_event: ProgressCallback | None = None,
    ) -> ConverterRun:
        """
        Run cbz2xtc in ``workspace`` while surfacing preview frames.

        Output is buffered for the summary; the workspace is polled for new
        frames concurrently until the process exits.

        Raises:
            ConversionError: Nonzero exit status (output included, truncated).
        """
        cmd = self.build_command(workspace, conversion_settings)
        logger.info("cbz2xtc spawn cwd=%s cmd=%s", workspace, " ".join(cmd))

        output_lines: list[str] = []
        error_lines: list[str] = []
        stop = asyncio.Event()
        watcher = FrameWatcher(workspace, min_age_ms=self.settings.frame_min_age_ms)
        interval = self.settings.frame_poll_interval_ms / 1000.0

        async def forward_frames() -> None:
            async for frame in watcher.watch(stop, interval):
                emit(on_event, frame)

        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(workspace),
            env=self.build_env(),
        )
        frame_task = asyncio.create_task(forward_frames(), name=f"frames-{workspace.name}")

        try:
            if process.stdout and process.stderr:
                await asyncio.gather(
                    self._collect(process.stdout, output_lines),
                    self._collect(process.stderr, error_lines),
                )
            await process.wait()
        finally:
            stop.set()
            if process.returncode is None:
                process.kill()
                await process.wait()
            try:
                await frame_task
            except Exception:
                logger.warning("frame watcher failed in %s", workspace, exc_info=True)

        stdout_str = "\n".join(output_lines)
        stderr_str = "\n".join(error_lines)

        if process.returncode != 0:
            raise ConversionError(
                f"cbz2xtc failed with exit code {process.returncode}.\n"
                f"STDOUT:\n{stdout_str[:FAILURE_OUTPUT_CHARS]}\n"
                f"STDERR:\n{stderr_str[:FAILURE_OUTPUT_CHARS]}"
            )

        summary = summarize_output(stdout_str, stderr_str)
        if summary:
            emit(on_event, ConverterSummary(summary=summary))
        return ConverterRun(stdout=stdout_str, stderr=stderr_str, summary=summary)

    async def _collect(self, stream: asyncio.StreamReader, sink: list[str]) -> None:
        async for line in self._read_lines(stream):
            sink.append(line)

    async def _read_lines(
        self, stream: asyncio.StreamReader
    ) -> AsyncGenerator[str, None]:
        """Read lines from async stream."""
        while True:
            line = await stream.readline()
            if not line:
                break
            yield line.decode("utf-8", errors="replace").rstrip()
