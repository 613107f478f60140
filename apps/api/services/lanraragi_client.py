"""Async HTTP client for the LANraragi archive server."""

import base64
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote, urlsplit

import httpx
from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(60.0, connect=10.0)


class LanraragiError(Exception):
    """Base exception for LANraragi operations."""

    pass


class LanraragiRequestError(LanraragiError):
    """The server answered with a non-2xx status."""

    def __init__(self, what: str, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        detail = f": {body}" if body else ""
        super().__init__(f"{what} failed ({status_code}){detail}")


class ArchiveRecord(BaseModel):
    """Archive metadata as returned by LANraragi. Unknown keys are kept."""

    model_config = ConfigDict(extra="allow")

    arcid: str
    title: str = ""
    filename: str = ""
    tags: str = ""
    extension: str = ""
    pagecount: int = 0


@dataclass
class PagePayload:
    """Body and headers of one fetched page."""

    content: bytes
    content_type: str
    content_disposition: str = ""


def normalize_lanraragi_base_url(raw: str) -> str:
    """Reduce a user-supplied URL to ``scheme://host[:port]``."""
    trimmed = (raw or "").strip()
    if not trimmed:
        raise ValueError("LANraragi base URL is required.")
    if not trimmed.lower().startswith(("http://", "https://")):
        trimmed = f"http://{trimmed}"
    parts = urlsplit(trimmed)
    if not parts.netloc:
        raise ValueError(f"Invalid LANraragi base URL: {raw!r}")
    return f"{parts.scheme}://{parts.netloc}"


class LanraragiClient:
    """Thin wrapper over the LANraragi JSON and file endpoints."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: httpx.Timeout | float = DEFAULT_TIMEOUT,
    ) -> None:
        self.base_url = normalize_lanraragi_base_url(base_url)
        self.api_key = api_key or ""
        headers: dict[str, str] = {}
        if self.api_key:
            token = base64.b64encode(self.api_key.encode("utf-8")).decode("ascii")
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _params(self, query: dict[str, Any] | None = None) -> dict[str, str]:
        params: dict[str, str] = {}
        for key, value in (query or {}).items():
            if value is None or value == "":
                continue
            params[key] = str(value).lower() if isinstance(value, bool) else str(value)
        if self.api_key:
            params["key"] = self.api_key
        return params

    async def _request(self, what: str, url: httpx.URL | str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.get(url, **kwargs)
        except httpx.HTTPError as e:
            raise LanraragiError(f"{what} failed: {e}") from e

    async def _get_json(self, path: str, query: dict[str, Any] | None = None) -> Any:
        response = await self._request("LANraragi request", path, params=self._params(query))
        if response.is_error:
            raise LanraragiRequestError("LANraragi request", response.status_code, response.text[:200])
        return response.json()

    async def _get(self, path: str, what: str, query: dict[str, Any] | None = None) -> httpx.Response:
        response = await self._request(what, path, params=self._params(query))
        if response.is_error:
            raise LanraragiRequestError(what, response.status_code, response.text[:120])
        return response

    async def ping(self) -> dict[str, Any]:
        """Server name/version info."""
        return await self._get_json("/api/info")

    async def search_archives(
        self,
        filter: str = "",
        start: int = 0,
        sortby: str = "title",
        order: str = "asc",
        category: str = "",
    ) -> dict[str, Any]:
        """Paginated search: ``{recordsTotal, recordsFiltered, data: [...]}``."""
        return await self._get_json(
            "/api/search",
            {"filter": filter, "start": start, "sortby": sortby, "order": order, "category": category},
        )

    async def get_metadata(self, archive_id: str) -> ArchiveRecord:
        data = await self._get_json(_archive_path(archive_id, "metadata"))
        return ArchiveRecord.model_validate(data)

    async def get_pages(self, archive_id: str, force: bool = False) -> list[str]:
        """Page references from the server's extraction cache; ``force`` rebuilds it."""
        data = await self._get_json(_archive_path(archive_id, "files"), {"force": force})
        pages = data.get("pages") if isinstance(data, dict) else None
        return [str(page) for page in pages or []]

    async def get_tag_stats(self, minweight: int = 1) -> list[dict[str, Any]]:
        data = await self._get_json("/api/database/stats", {"minweight": minweight})
        return data if isinstance(data, list) else []

    async def get_thumbnail(self, archive_id: str) -> PagePayload:
        response = await self._get(_archive_path(archive_id, "thumbnail"), "Thumbnail request")
        return _payload(response)

    async def get_page(self, archive_id: str, page_path: str) -> PagePayload:
        response = await self._get(_archive_path(archive_id, "page"), "Page request", {"path": page_path})
        return _payload(response)

    async def download_page(self, page_ref: str) -> PagePayload:
        """Fetch a page by the reference returned from :meth:`get_pages`."""
        url = httpx.URL(page_ref)
        if not url.is_absolute_url:
            url = httpx.URL(self.base_url).join(page_ref)
        if self.api_key and "key" not in url.params:
            url = url.copy_merge_params({"key": self.api_key})

        response = await self._request("Page fetch", url)
        if response.is_error:
            raise LanraragiRequestError("Page fetch", response.status_code, response.text[:120])
        return _payload(response)

    @asynccontextmanager
    async def open_archive_download(self, archive_id: str) -> AsyncIterator[httpx.Response]:
        """Stream the raw archive; the caller inspects headers before reading."""
        request = self._client.build_request(
            "GET", _archive_path(archive_id, "download"), params=self._params()
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise LanraragiError(f"Archive download failed: {e}") from e
        try:
            if response.is_error:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise LanraragiRequestError("Archive download", response.status_code, body[:200])
            yield response
        except httpx.HTTPError as e:
            raise LanraragiError(f"Archive download failed: {e}") from e
        finally:
            await response.aclose()


def _payload(response: httpx.Response) -> PagePayload:
    return PagePayload(
        content=response.content,
        content_type=response.headers.get("content-type", ""),
        content_disposition=response.headers.get("content-disposition", ""),
    )


def _archive_path(archive_id: str, endpoint: str) -> str:
    return f"/api/archives/{quote(archive_id, safe='')}/{endpoint}"
