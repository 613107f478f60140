"""Choose how a job obtains its local CBZ conversion input."""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from services.archive_assembler import ArchiveAssembler
from services.conversion_settings import (
    ConversionSettings,
    build_page_range_list,
    shift_dont_split_for_prepended_cover,
)
from services.events import PagesDiscovered, ProgressCallback, StageChanged, emit
from services.lanraragi_client import ArchiveRecord, LanraragiClient
from services.page_fetcher import PageFetcher, page_label_from_reference

logger = logging.getLogger(__name__)

CONTAINER_EXTENSIONS = frozenset({"cbz", "zip"})
ZIP_SIGNATURES = (b"PK\x03\x04", b"PK\x05\x06", b"PK\x07\x08")
NON_ARCHIVE_TYPES = ("text/html", "application/json")


class InputResolutionError(Exception):
    """No conversion input could be produced for an archive."""

    pass


def is_container_extension(extension: str) -> bool:
    return (extension or "").lstrip(".").lower() in CONTAINER_EXTENSIONS


def looks_like_non_archive(content_type: str) -> bool:
    """A cover image or an error page served in place of the archive."""
    lowered = (content_type or "").lower()
    if not lowered:
        return False
    if lowered.startswith("image/"):
        return True
    return any(kind in lowered for kind in NON_ARCHIVE_TYPES)


def is_zip_archive(path: Path) -> bool:
    try:
        with path.open("rb") as fh:
            head = fh.read(4)
    except OSError:
        return False
    return head in ZIP_SIGNATURES


@dataclass
class ResolutionContext:
    """Per-job state shared by the resolution steps."""

    archive_id: str
    metadata: ArchiveRecord
    settings: ConversionSettings
    archive_path: Path
    on_event: ProgressCallback | None = None
    cached_pages: list[str] | None = None
    cover_prep_applied: bool = False
    no_split_applied: bool = False
    strategy: str | None = None

    @property
    def expected_page_count(self) -> int | None:
        # LANraragi reports 0 for archives it has not counted yet.
        return self.metadata.pagecount if self.metadata.pagecount > 0 else None

    @property
    def container_ready(self) -> bool:
        return self.archive_path.exists()

    @property
    def landscape(self) -> bool:
        return self.settings.orientation == "landscape"


@dataclass
class ResolvedInput:
    """The outcome of input resolution."""

    archive_path: Path
    settings: ConversionSettings
    strategy: str


class ResolutionStrategy:
    """One way of producing the container; tried in order until one succeeds."""

    name = "strategy"

    def __init__(self, resolver: "InputResolver") -> None:
        self.resolver = resolver

    def applies(self, ctx: ResolutionContext) -> bool:
        return not ctx.container_ready

    async def run(self, ctx: ResolutionContext) -> None:
        raise NotImplementedError

    def succeeded(self, ctx: ResolutionContext) -> bool:
        return ctx.container_ready


class PageExtractionStrategy(ResolutionStrategy):
    """Assemble from LANraragi's extracted page cache when it lists more than one page."""

    name = "page-extraction"

    def applies(self, ctx: ResolutionContext) -> bool:
        return self.resolver.use_page_extraction and not ctx.container_ready

    async def run(self, ctx: ResolutionContext) -> None:
        emit(ctx.on_event, StageChanged("fetching-pages", "Retrieving page list from LANraragi cache"))
        pages = await self.resolver.fetcher.list_pages(ctx.archive_id, ctx.expected_page_count)
        ctx.cached_pages = pages
        logger.info("page extraction enabled id=%s pages=%d", ctx.archive_id, len(pages))

        if len(pages) <= 1:
            logger.info(
                "page extraction returned <=1 page for id=%s; trying archive download fallback",
                ctx.archive_id,
            )
            return

        await self.resolver.assemble(ctx, pages)


class DirectDownloadStrategy(ResolutionStrategy):
    """Download the raw CBZ/ZIP and keep it only if it really is a zip."""

    name = "direct-download"

    def applies(self, ctx: ResolutionContext) -> bool:
        return not ctx.container_ready and is_container_extension(ctx.metadata.extension)

    async def run(self, ctx: ResolutionContext) -> None:
        client = self.resolver.client
        async with client.open_archive_download(ctx.archive_id) as response:
            content_type = response.headers.get("content-type", "")
            logger.info("archive download id=%s content-type=%s", ctx.archive_id, content_type or "unknown")

            if looks_like_non_archive(content_type):
                logger.info(
                    "archive download looked non-archive, falling back to pages id=%s",
                    ctx.archive_id,
                )
                return

            emit(ctx.on_event, StageChanged("archive-download", "Downloading source archive from LANraragi"))
            with ctx.archive_path.open("wb") as fh:
                async for chunk in response.aiter_bytes():
                    await asyncio.to_thread(fh.write, chunk)

        if not await asyncio.to_thread(is_zip_archive, ctx.archive_path):
            logger.error(
                "archive download was not zip-like id=%s; falling back to page extraction",
                ctx.archive_id,
            )
            ctx.archive_path.unlink(missing_ok=True)


class PageAssemblyFallbackStrategy(ResolutionStrategy):
    """Last resort: refresh the page list and assemble whatever it yields."""

    name = "page-assembly"

    async def run(self, ctx: ResolutionContext) -> None:
        pages = await self.resolver.fetcher.list_pages(
            ctx.archive_id, ctx.expected_page_count, force_refresh=True
        )
        if not pages and ctx.cached_pages:
            pages = ctx.cached_pages
        ctx.cached_pages = pages
        logger.info("page assembly fallback id=%s pages=%d", ctx.archive_id, len(pages))
        if not pages:
            raise InputResolutionError("Archive has no readable pages. Cannot build conversion input.")

        await self.resolver.assemble(ctx, pages)


class InputResolver:
    """
    Produce the CBZ that cbz2xtc will convert.

    Resolution order:
        1. No-split page range (settings only, may fetch the page list).
        2. Page extraction, when enabled.
        3. Direct download, for cbz/zip sources.
        4. Page assembly from a refreshed page list.
    """

    def __init__(
        self,
        client: LanraragiClient,
        fetcher: PageFetcher,
        assembler: ArchiveAssembler,
        use_page_extraction: bool = True,
    ) -> None:
        self.client = client
        self.fetcher = fetcher
        self.assembler = assembler
        self.use_page_extraction = use_page_extraction
        self.strategies: list[ResolutionStrategy] = [
            PageExtractionStrategy(self),
            DirectDownloadStrategy(self),
            PageAssemblyFallbackStrategy(self),
        ]

    async def resolve(self, ctx: ResolutionContext) -> ResolvedInput:
        """
        Run the strategy chain until a valid container exists.

        Raises:
            InputResolutionError: No strategy produced a container.
        """
        await self.apply_no_split_range(ctx)

        if ctx.container_ready:
            return ResolvedInput(ctx.archive_path, ctx.settings, ctx.strategy or "existing")

        for strategy in self.strategies:
            if not strategy.applies(ctx):
                continue
            await strategy.run(ctx)
            if strategy.succeeded(ctx):
                ctx.strategy = strategy.name
                logger.info("input resolved id=%s strategy=%s", ctx.archive_id, strategy.name)
                return ResolvedInput(ctx.archive_path, ctx.settings, strategy.name)

        raise InputResolutionError(f"Could not build conversion input for archive {ctx.archive_id}.")

    async def apply_no_split_range(self, ctx: ResolutionContext) -> None:
        """
        In no-split mode, mark every page as dont-split.

        The generated range replaces any caller-supplied ``dontSplit`` value.
        """
        if ctx.no_split_applied or ctx.settings.split_mode != "nosplit":
            return

        page_count = ctx.metadata.pagecount or 0
        if page_count <= 0:
            ctx.cached_pages = await self.fetcher.list_pages(ctx.archive_id, ctx.expected_page_count)
            page_count = len(ctx.cached_pages)

        update: dict[str, object] = {"overlap": False, "split_all": False}
        if page_count > 0:
            update["dont_split"] = build_page_range_list(page_count)
        ctx.settings = ctx.settings.model_copy(update=update)
        ctx.no_split_applied = True

    def prepare_pages_for_build(self, ctx: ResolutionContext, pages: list[str]) -> list[str]:
        """
        Duplicate page 1 as a portrait cover for landscape output.

        ``dontSplit`` is shifted for the inserted page only the first time
        this runs for a job.
        """
        if not ctx.landscape or not pages:
            return pages

        if not ctx.cover_prep_applied:
            ctx.settings = ctx.settings.model_copy(
                update={"dont_split": shift_dont_split_for_prepended_cover(ctx.settings.dont_split)}
            )
            ctx.cover_prep_applied = True
            emit(ctx.on_event, StageChanged("cover-prep", "Preparing portrait cover before landscape conversion"))

        return [pages[0], *pages]

    async def assemble(self, ctx: ResolutionContext, pages: list[str]) -> None:
        pages_for_build = self.prepare_pages_for_build(ctx, pages)
        emit(
            ctx.on_event,
            PagesDiscovered(
                total=len(pages_for_build),
                labels=[page_label_from_reference(page) for page in pages_for_build],
            ),
        )
        emit(
            ctx.on_event,
            StageChanged(
                "building-input",
                f"Downloading {len(pages_for_build)} pages and building conversion archive",
            ),
        )
        await self.assembler.build(
            pages_for_build,
            ctx.archive_path,
            rotate_first_page=ctx.landscape,
            on_event=ctx.on_event,
        )
