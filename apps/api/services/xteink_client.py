"""HTTP client for the XTEink device file server and the conflict-aware uploader."""

import asyncio
import logging
import re
import time
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import httpx
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

DEFAULT_DEVICE_TIMEOUT = 120.0
CONFLICT_PATTERN = re.compile(r"already exists|file exists|conflict", re.IGNORECASE)


class DeviceError(Exception):
    """Base exception for device operations."""

    pass


class DeviceRequestError(DeviceError):
    """The device answered with a non-2xx status."""

    def __init__(self, what: str, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(f"{what} failed ({status_code}): {body}")


class DeviceUploadError(DeviceError):
    """An upload could not be completed, even after the overwrite retry."""

    pass


class DeviceFileEntry(BaseModel):
    """One entry of a device directory listing."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str
    size: int = 0
    is_directory: bool = Field(default=False, alias="isDirectory")
    is_epub: bool = Field(default=False, alias="isEpub")


def normalize_device_base_url(raw: str) -> str:
    """Reduce a user-supplied device address to ``scheme://host[:port]``."""
    trimmed = (raw or "").strip()
    if not trimmed:
        raise ValueError("Device base URL is required.")
    if not trimmed.lower().startswith(("http://", "https://")):
        trimmed = f"http://{trimmed}"
    parts = urlsplit(trimmed)
    if not parts.netloc:
        raise ValueError(f"Invalid device base URL: {raw!r}")
    return f"{parts.scheme}://{parts.netloc}"


def normalize_device_path(raw: str) -> str:
    """``""``/``"."`` -> ``"/"``; ensure a leading slash; collapse repeated slashes."""
    trimmed = (raw or "").strip()
    if not trimmed or trimmed == ".":
        return "/"
    if not trimmed.startswith("/"):
        trimmed = f"/{trimmed}"
    return re.sub(r"/+", "/", trimmed)


def join_device_path(directory: str, name: str) -> str:
    return normalize_device_path(f"{normalize_device_path(directory)}/{name}")


def is_conflict(error: DeviceRequestError) -> bool:
    return error.status_code == 409 or bool(CONFLICT_PATTERN.search(error.body or ""))


class XteinkClient:
    """Async wrapper over the device's file-manager HTTP endpoints."""

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_DEVICE_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = normalize_device_base_url(base_url)
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "XteinkClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _request(self, what: str, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise DeviceError(f"{what} failed: {e}") from e
        if response.is_error:
            raise DeviceRequestError(what, response.status_code, response.text[:200])
        return response

    async def list_files(self, raw_path: str) -> list[DeviceFileEntry]:
        response = await self._request(
            "Device file listing",
            "GET",
            "/api/files",
            params={"path": normalize_device_path(raw_path)},
        )
        data = response.json()
        if not isinstance(data, list):
            return []
        return [DeviceFileEntry.model_validate(entry) for entry in data]

    async def create_folder(self, raw_path: str, name: str) -> None:
        folder_name = (name or "").strip()
        if not folder_name:
            raise ValueError("Folder name is required.")
        await self._request(
            "Device mkdir",
            "POST",
            "/mkdir",
            files={
                "name": (None, folder_name),
                "path": (None, normalize_device_path(raw_path)),
            },
        )

    async def upload_file(self, file_path: Path, file_name: str, target_path: str) -> None:
        content = await asyncio.to_thread(Path(file_path).read_bytes)
        safe_name = file_name.replace('"', "_")
        await self._request(
            "Device upload",
            "POST",
            "/upload",
            params={"path": normalize_device_path(target_path)},
            files={"file": (safe_name, content, "application/octet-stream")},
        )

    async def delete_path(self, device_path: str) -> None:
        await self._request(
            "Device delete",
            "POST",
            "/delete",
            data={"path": normalize_device_path(device_path)},
        )


class DeviceUploader:
    """Push artifacts to the device, overwriting once on a name conflict."""

    def __init__(self, client: XteinkClient) -> None:
        self.client = client

    async def upload(self, file_path: Path, file_name: str, target_path: str) -> str:
        """
        Upload ``file_path`` as ``file_name`` into ``target_path``.

        Returns:
            The device path of the uploaded file.

        Raises:
            DeviceUploadError: The upload failed, or the delete-and-retry
                after a conflict failed. The first error is chained.
        """
        destination = join_device_path(target_path, file_name)
        started = time.monotonic()
        logger.info("upload start file=%s target=%s", file_name, destination)

        try:
            await self.client.upload_file(file_path, file_name, target_path)
        except DeviceRequestError as e:
            if not is_conflict(e):
                logger.error("upload failed file=%s: %s", file_name, e)
                raise DeviceUploadError(f"Upload of {file_name} failed: {e}") from e

            logger.warning("upload conflict file=%s; deleting existing and retrying", destination)
            try:
                await self.client.delete_path(destination)
                await self.client.upload_file(file_path, file_name, target_path)
            except DeviceError as retry_error:
                logger.error("upload retry failed file=%s: %s", file_name, retry_error)
                raise DeviceUploadError(
                    f"Upload of {file_name} failed after overwrite retry: {retry_error} (first error: {e})"
                ) from e
        except DeviceError as e:
            logger.error("upload failed file=%s: %s", file_name, e)
            raise DeviceUploadError(f"Upload of {file_name} failed: {e}") from e

        logger.info(
            "upload done file=%s target=%s elapsed=%.1fs",
            file_name,
            destination,
            time.monotonic() - started,
        )
        return destination
