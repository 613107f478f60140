"""Build a CBZ conversion input from individually fetched pages."""

import asyncio
import logging
import zipfile
from pathlib import Path

from PIL import Image

from services.events import ArchiveReady, PageDone, ProgressCallback, emit
from services.page_fetcher import IMAGE_EXTENSIONS, PageFetcher, infer_page_extension, page_label_from_reference

logger = logging.getLogger(__name__)

PAGE_DIR_NAME = "pages_tmp"
JPEG_QUALITY = 95


class ArchiveBuildError(Exception):
    """The conversion archive could not be built faithfully."""

    pass


def normalize_image(src: Path) -> Path:
    """
    Re-encode one page as a baseline RGB JPEG next to the source.

    Transparency is flattened onto white. The source is removed when the
    output path differs.
    """
    dst = src.with_suffix(".jpg")
    with Image.open(src) as im:
        if im.mode in ("RGBA", "LA") or (im.mode == "P" and "transparency" in im.info):
            rgba = im.convert("RGBA")
            out = Image.new("RGB", rgba.size, (255, 255, 255))
            out.paste(rgba, mask=rgba.split()[-1])
        else:
            out = im.convert("RGB")
    out.save(dst, format="JPEG", quality=JPEG_QUALITY, optimize=True)
    if dst != src:
        src.unlink(missing_ok=True)
    return dst


def normalize_images(files: list[Path]) -> list[Path]:
    return [normalize_image(path) for path in files]


def rotate_cover(path: Path) -> None:
    """Rotate a page 90 degrees in place so a portrait cover reads upright in landscape output."""
    with Image.open(path) as im:
        rotated = im.rotate(90, expand=True)
    ext = path.suffix.lower()
    if ext in (".jpg", ".jpeg"):
        if rotated.mode != "RGB":
            rotated = rotated.convert("RGB")
        rotated.save(path, format="JPEG", quality=JPEG_QUALITY, optimize=True)
    elif ext == ".png":
        rotated.save(path, format="PNG", optimize=True)
    else:
        rotated.save(path)


def pack_archive(files: list[Path], archive_path: Path) -> int:
    """Zip image files in the given order; returns how many were packed."""
    packed = 0
    with zipfile.ZipFile(archive_path, mode="w", compression=zipfile.ZIP_STORED) as archive:
        for path in files:
            if path.suffix.lower() not in IMAGE_EXTENSIONS:
                continue
            archive.write(path, arcname=path.name)
            packed += 1
    return packed


class ArchiveAssembler:
    """Download pages under a worker limit and pack them into one CBZ."""

    def __init__(self, fetcher: PageFetcher, concurrency: int = 6) -> None:
        self.fetcher = fetcher
        self.concurrency = max(1, concurrency)

    async def build(
        self,
        pages: list[str],
        archive_path: Path,
        rotate_first_page: bool = False,
        on_event: ProgressCallback | None = None,
    ) -> int:
        """
        Fetch ``pages`` in order and write ``archive_path``.

        Args:
            pages: Page references, in reading order.
            archive_path: Output CBZ path; pages are staged next to it.
            rotate_first_page: Rotate page 1 for the landscape cover layout.
            on_event: Receives ``PageDone`` per page and ``ArchiveReady`` at the end.

        Returns:
            Number of pages packed (always ``len(pages)``).

        Raises:
            PageFetchError: A page exhausted its retries.
            ArchiveBuildError: Normalization or packing lost pages.
        """
        page_dir = archive_path.parent / PAGE_DIR_NAME
        page_dir.mkdir(parents=True, exist_ok=True)

        semaphore = asyncio.Semaphore(self.concurrency)
        total = len(pages)

        async def download_one(index: int, page_ref: str) -> Path:
            page_number = index + 1
            async with semaphore:
                payload = await self.fetcher.fetch(page_ref, page_number)
                ext = infer_page_extension(payload, page_ref)
                path = page_dir / f"{page_number:05d}{ext}"
                await asyncio.to_thread(path.write_bytes, payload.content)
            emit(on_event, PageDone(index=page_number, total=total, label=page_label_from_reference(page_ref)))
            return path

        tasks = [
            asyncio.create_task(download_one(i, ref), name=f"page-{i + 1}")
            for i, ref in enumerate(pages)
        ]
        try:
            downloaded = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        files = await asyncio.to_thread(normalize_images, list(downloaded))

        if rotate_first_page and files:
            await asyncio.to_thread(rotate_cover, files[0])
            logger.info("landscape cover prep applied file=%s", files[0].name)

        packed = await asyncio.to_thread(pack_archive, files, archive_path)
        if packed != total:
            raise ArchiveBuildError(f"CBZ build mismatch: expected {total} pages, archived {packed}.")

        logger.info("built cbz from pages path=%s pages=%d", archive_path, packed)
        emit(on_event, ArchiveReady(total=packed))
        return packed
