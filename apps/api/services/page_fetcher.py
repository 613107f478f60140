"""Single-page fetching with bounded retries, plus page-reference helpers."""

import asyncio
import logging
import posixpath
import re
from collections.abc import Awaitable, Callable
from urllib.parse import unquote

from services.lanraragi_client import LanraragiClient, PagePayload

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".avif"})

# LANraragi answers some failures with a 200 carrying an HTML or JSON body.
DISGUISED_ERROR_TYPES = ("text/html", "application/json")

_PATH_PARAM = re.compile(r"[?&]path=([^&]+)", re.IGNORECASE)
_DISPOSITION_FILENAME = re.compile(r'filename="?([^";]+)"?', re.IGNORECASE)

_CONTENT_TYPE_EXTENSIONS = [
    ("png", ".png"),
    ("webp", ".webp"),
    ("gif", ".gif"),
    ("bmp", ".bmp"),
    ("avif", ".avif"),
    ("jpeg", ".jpg"),
    ("jpg", ".jpg"),
]


class PageFetchError(Exception):
    """A page could not be fetched within the allowed attempts."""

    pass


def page_label_from_reference(page_ref: str) -> str:
    """Human label for a page: the archive-internal path when present, else the last URL segment."""
    match = _PATH_PARAM.search(page_ref)
    if match:
        return unquote(match.group(1))
    plain = page_ref.split("?", 1)[0].strip()
    if not plain:
        return page_ref
    return plain.rstrip("/").rsplit("/", 1)[-1] or plain


def _image_extension(name: str) -> str | None:
    ext = posixpath.splitext(name)[1].lower()
    return ext if ext in IMAGE_EXTENSIONS else None


def infer_page_extension(payload: PagePayload, page_ref: str) -> str:
    """Pick a file extension from content-type, then content-disposition, then the reference."""
    content_type = payload.content_type.lower()
    for needle, ext in _CONTENT_TYPE_EXTENSIONS:
        if needle in content_type:
            return ext

    match = _DISPOSITION_FILENAME.search(payload.content_disposition or "")
    if match:
        ext = _image_extension(match.group(1))
        if ext:
            return ext

    match = _PATH_PARAM.search(page_ref)
    if match:
        ext = _image_extension(unquote(match.group(1)))
        if ext:
            return ext

    return _image_extension(page_ref.split("?", 1)[0]) or ".jpg"


class PageFetcher:
    """Fetch pages from LANraragi with linear-backoff retries."""

    def __init__(
        self,
        client: LanraragiClient,
        attempts: int = 3,
        delay_ms: int = 300,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.attempts = max(1, attempts)
        self.delay_ms = delay_ms
        self._sleep = sleep

    async def fetch(self, page_ref: str, page_number: int) -> PagePayload:
        """
        Download one page.

        Raises:
            PageFetchError: After ``attempts`` failures. Responses whose
                content-type is HTML or JSON count as failures.
        """
        last_error: Exception | None = None

        for attempt in range(1, self.attempts + 1):
            try:
                payload = await self.client.download_page(page_ref)
                content_type = payload.content_type.lower()
                if any(kind in content_type for kind in DISGUISED_ERROR_TYPES):
                    raise PageFetchError(
                        f"Unexpected page content-type for page {page_number}: {content_type or 'unknown'}"
                    )
                return payload
            except Exception as e:
                last_error = e
                if attempt < self.attempts:
                    logger.info(
                        "page fetch retry page=%d attempt=%d/%d: %s",
                        page_number,
                        attempt + 1,
                        self.attempts,
                        e,
                    )
                    await self._sleep(self.delay_ms * attempt / 1000.0)

        if isinstance(last_error, PageFetchError):
            raise last_error
        raise PageFetchError(f"Failed to fetch page {page_number}: {last_error}") from last_error

    async def list_pages(
        self,
        archive_id: str,
        expected_page_count: int | None = None,
        force_refresh: bool = False,
    ) -> list[str]:
        """
        Return the archive's page references.

        The cached list is preferred. A cache answer of one page or fewer is
        re-requested with ``force`` unless metadata says the archive really is
        that small. ``force_refresh`` skips the cached read entirely.
        """
        cached: list[str] = []
        if not force_refresh:
            cached = await self.client.get_pages(archive_id, force=False)
            if len(cached) > 1:
                return cached
            if expected_page_count is not None and 0 < expected_page_count <= 1:
                return cached

        refreshed = await self.client.get_pages(archive_id, force=True)
        if not force_refresh and len(refreshed) != len(cached):
            logger.info(
                "page list refresh id=%s cached=%d refreshed=%d",
                archive_id,
                len(cached),
                len(refreshed),
            )
        return refreshed if refreshed else cached
