"""Services module."""

from .batch_scheduler import BatchError, BatchManager, BatchScheduler
from .conversion_pipeline import ConversionArtifact, ConversionPipeline
from .converter_engine import (
    ConversionError,
    ConverterEngine,
    ConverterError,
    ConverterNotFoundError,
)
from .input_resolution import InputResolutionError, InputResolver
from .job_manager import JobManager
from .lanraragi_client import LanraragiClient, LanraragiError, LanraragiRequestError
from .page_fetcher import PageFetcher, PageFetchError
from .xteink_client import DeviceError, DeviceUploader, DeviceUploadError, XteinkClient

__all__ = [
    # LanraragiClient
    "LanraragiClient",
    "LanraragiError",
    "LanraragiRequestError",
    # Page fetching / input
    "PageFetcher",
    "PageFetchError",
    "InputResolver",
    "InputResolutionError",
    # ConverterEngine
    "ConverterEngine",
    "ConverterError",
    "ConverterNotFoundError",
    "ConversionError",
    # Pipeline
    "ConversionPipeline",
    "ConversionArtifact",
    # JobManager
    "JobManager",
    # Batches
    "BatchScheduler",
    "BatchManager",
    "BatchError",
    # Device
    "XteinkClient",
    "DeviceUploader",
    "DeviceError",
    "DeviceUploadError",
]
