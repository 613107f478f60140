"""Process-wide service instances exposed as FastAPI dependencies."""

from functools import lru_cache

from core.config import get_settings
from services.batch_scheduler import ArtifactUploader, BatchManager
from services.connections import DeviceConnection, LanraragiConnection
from services.conversion_pipeline import ConversionArtifact, ConversionPipeline
from services.conversion_settings import ConversionSettings
from services.events import ProgressCallback
from services.job_manager import JobManager
from services.xteink_client import DeviceUploader, normalize_device_base_url, normalize_device_path


@lru_cache
def get_lanraragi_connection() -> LanraragiConnection:
    settings = get_settings()
    return LanraragiConnection(settings.lanraragi_base_url, settings.lanraragi_api_key)


@lru_cache
def get_device_connection() -> DeviceConnection:
    settings = get_settings()
    return DeviceConnection(
        settings.xteink_base_url,
        settings_file=settings.device_settings_file,
        timeout=settings.device_request_timeout_seconds,
    )


def build_pipeline() -> ConversionPipeline:
    """A pipeline bound to the LANraragi client that is current right now."""
    return ConversionPipeline(get_lanraragi_connection().client, get_settings())


async def run_conversion(
    archive_id: str,
    settings: ConversionSettings,
    on_event: ProgressCallback,
) -> ConversionArtifact:
    return await build_pipeline().convert(archive_id, settings, on_event)


@lru_cache
def get_job_manager() -> JobManager:
    settings = get_settings()
    return JobManager(run_conversion, ttl_seconds=settings.job_ttl_seconds)


@lru_cache
def get_batch_manager() -> BatchManager:
    return BatchManager(get_job_manager(), max_parallel=get_settings().batch_max_parallel)


def resolve_device_target(
    device: DeviceConnection,
    base_url: str | None,
    path: str | None,
) -> tuple[str, str]:
    """
    Request overrides fall back to the saved device settings.

    Raises:
        ValueError: The base URL is not usable.
    """
    defaults = device.get_settings()
    return (
        normalize_device_base_url(base_url or defaults.base_url),
        normalize_device_path(path or defaults.path),
    )


def make_artifact_uploader(device: DeviceConnection, base_url: str, path: str) -> ArtifactUploader:
    async def upload(artifact: ConversionArtifact) -> str:
        async with device.client(base_url) as client:
            return await DeviceUploader(client).upload(
                artifact.file_path,
                artifact.download_name,
                path,
            )

    return upload
