"""Convert one LANraragi archive into an XTC file in a private workspace."""

import asyncio
import logging
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from core.config import Settings, get_settings
from services.archive_assembler import ArchiveAssembler
from services.conversion_settings import ConversionSettings
from services.converter_engine import (
    DELIVER_DIR_NAME,
    OUTPUT_DIR_NAME,
    ConversionError,
    ConverterEngine,
)
from services.events import ConversionDone, ProgressCallback, StageChanged, emit
from services.input_resolution import InputResolver, ResolutionContext
from services.lanraragi_client import ArchiveRecord, LanraragiClient
from services.page_fetcher import PageFetcher

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = "lrr-xtc-"
SEGMENT_MAX_LENGTH = 120
DOWNLOAD_NAME_MAX_LENGTH = 220

_UNSAFE_SEGMENT = re.compile(r"[^a-zA-Z0-9._-]+")
_FORBIDDEN_FILENAME = re.compile(r'[<>:"/\\|?*\x00-\x1f]+')
_WHITESPACE = re.compile(r"\s+")


def sanitize_segment(value: str) -> str:
    """Filesystem-safe base name for files inside the workspace."""
    cleaned = _UNSAFE_SEGMENT.sub("_", value or "").strip("_")
    return cleaned[:SEGMENT_MAX_LENGTH] or "archive"


def clean_filename_part(value: str) -> str:
    return _WHITESPACE.sub(" ", _FORBIDDEN_FILENAME.sub(" ", value or "")).strip()


def parse_tags(raw: str) -> list[str]:
    return [tag.strip() for tag in (raw or "").split(",") if tag.strip()]


def namespace_tag_values(tags: list[str], namespace: str) -> list[str]:
    prefix = f"{namespace.lower()}:"
    values = [clean_filename_part(tag[len(prefix):]) for tag in tags if tag.lower().startswith(prefix)]
    return [value for value in values if value]


def build_download_name(metadata: ArchiveRecord) -> str:
    """
    Suggested file name: ``[group (artist)] title.xtc``.

    Either namespace may be missing: ``[group] title.xtc``,
    ``(artist) title.xtc`` or just ``title.xtc``.
    """
    tags = parse_tags(metadata.tags)
    groups = namespace_tag_values(tags, "group")
    artists = namespace_tag_values(tags, "artist")
    group = groups[0] if groups else ""
    artist = artists[0] if artists else ""
    title = clean_filename_part(metadata.title or metadata.filename or metadata.arcid) or "archive"

    if group and artist:
        prefix = f"[{group} ({artist})] "
    elif group:
        prefix = f"[{group}] "
    elif artist:
        prefix = f"({artist}) "
    else:
        prefix = ""

    stem = f"{prefix}{title}"[: DOWNLOAD_NAME_MAX_LENGTH - len(".xtc")].rstrip()
    return f"{stem}.xtc"


async def remove_workspace(workspace: Path) -> None:
    logger.info("cleanup jobDir=%s", workspace)
    await asyncio.to_thread(shutil.rmtree, workspace, True)


@dataclass
class ConversionArtifact:
    """
    The delivered XTC file and the workspace that owns it.

    ``dispose`` removes the whole workspace; calling it again is a no-op.
    """

    file_path: Path
    download_name: str
    file_size: int
    workspace: Path
    _disposed: bool = field(default=False, repr=False)

    @property
    def disposed(self) -> bool:
        return self._disposed

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        await remove_workspace(self.workspace)


class ConversionPipeline:
    """metadata -> input resolution -> cbz2xtc -> deliver."""

    def __init__(
        self,
        client: LanraragiClient,
        settings: Settings | None = None,
        engine: ConverterEngine | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.client = client
        self.engine = engine or ConverterEngine(self.settings)
        fetcher = PageFetcher(
            client,
            attempts=self.settings.page_fetch_retry_attempts,
            delay_ms=self.settings.page_fetch_retry_delay_ms,
        )
        assembler = ArchiveAssembler(fetcher, concurrency=self.settings.page_fetch_concurrency)
        self.resolver = InputResolver(
            client,
            fetcher,
            assembler,
            use_page_extraction=self.settings.use_lrr_page_extraction,
        )

    def create_workspace(self) -> Path:
        root = self.settings.temp_root_absolute
        root.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=WORKSPACE_PREFIX, dir=root))

    async def convert(
        self,
        archive_id: str,
        conversion_settings: ConversionSettings,
        on_event: ProgressCallback | None = None,
    ) -> ConversionArtifact:
        """
        Run the full conversion for ``archive_id``.

        The caller's settings are never mutated; a normalized copy drives the
        run. On any failure the workspace is removed before the error
        propagates.

        Raises:
            ConverterNotFoundError: Tool paths missing (no workspace is created).
            InputResolutionError: No conversion input could be built.
            ConversionError: cbz2xtc failed or produced no output.
        """
        self.engine.ensure_available()
        workspace = await asyncio.to_thread(self.create_workspace)

        try:
            emit(on_event, StageChanged("metadata", "Loading archive metadata"))
            metadata = await self.client.get_metadata(archive_id)
            logger.info(
                "convert start id=%s ext=%s pagecount=%d",
                archive_id,
                metadata.extension,
                metadata.pagecount,
            )

            base_name = sanitize_segment(metadata.title or metadata.filename or metadata.arcid)
            download_name = build_download_name(metadata)
            ctx = ResolutionContext(
                archive_id=archive_id,
                metadata=metadata,
                settings=conversion_settings.normalized(),
                archive_path=workspace / f"{base_name}.cbz",
                on_event=on_event,
            )
            resolved = await self.resolver.resolve(ctx)

            emit(on_event, StageChanged("cbz2xtc", "Running cbz2xtc conversion"))
            run = await self.engine.convert(workspace, resolved.settings, on_event)
            if run.summary:
                logger.info("cbz2xtc summary id=%s %s", archive_id, run.summary)

            output_path = workspace / OUTPUT_DIR_NAME / f"{base_name}.xtc"
            if not output_path.is_file():
                raise ConversionError(f"cbz2xtc finished but {output_path.name} was not produced.")

            deliver_dir = workspace / DELIVER_DIR_NAME
            deliver_dir.mkdir(parents=True, exist_ok=True)
            deliver_path = output_path.rename(deliver_dir / output_path.name)
            file_size = deliver_path.stat().st_size

            logger.info("convert done id=%s output=%s size=%d", archive_id, deliver_path, file_size)
            emit(on_event, ConversionDone(file_size=file_size, download_name=download_name))

            return ConversionArtifact(
                file_path=deliver_path,
                download_name=download_name,
                file_size=file_size,
                workspace=workspace,
            )
        except BaseException:
            await remove_workspace(workspace)
            raise
