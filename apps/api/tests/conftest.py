"""Pytest fixtures for API tests."""

import io
import os
import tempfile
from collections.abc import AsyncGenerator, Callable
from pathlib import Path

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from PIL import Image

os.environ.setdefault("LOG_FILE", str(Path(tempfile.gettempdir()) / "lrr-xtc-bridge-tests.log"))

from api.dependencies import (  # noqa: E402
    get_batch_manager,
    get_device_connection,
    get_job_manager,
    get_lanraragi_connection,
)
from core.config import Settings, get_settings  # noqa: E402
from main import app  # noqa: E402
from services.batch_scheduler import BatchManager  # noqa: E402
from services.connections import DeviceConnection, LanraragiConnection  # noqa: E402
from services.job_manager import JobManager  # noqa: E402

LRR_BASE_URL = "http://lrr.test"
DEVICE_BASE_URL = "http://xteink.test"


def make_image_bytes(
    fmt: str = "JPEG",
    size: tuple[int, int] = (60, 90),
    mode: str = "RGB",
    color: tuple[int, ...] = (200, 40, 40),
) -> bytes:
    """Encode a solid-colour test image."""
    buffer = io.BytesIO()
    Image.new(mode, size, color).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings pointing every path into tmp_path."""
    script = tmp_path / "tools" / "cbz2xtc.py"
    script.parent.mkdir(parents=True)
    script.write_text("print('stub')\n", encoding="utf-8")
    return Settings(
        debug=True,
        environment="development",
        lanraragi_base_url=LRR_BASE_URL,
        xteink_base_url=DEVICE_BASE_URL,
        device_settings_file=tmp_path / "data" / "device-settings.json",
        cbz2xtc_path=script,
        temp_root=tmp_path / "work",
        page_fetch_retry_delay_ms=0,
        frame_poll_interval_ms=50,
        frame_min_age_ms=0,
        log_file=None,
    )


@pytest.fixture
def lrr_handler() -> Callable[[httpx.Request], httpx.Response]:
    """Default fake LANraragi: every request is a 404. Tests override this fixture."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="not found")

    return handler


@pytest.fixture
def device_handler() -> Callable[[httpx.Request], httpx.Response]:
    """Default fake device: empty listings, every write succeeds."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/files":
            return httpx.Response(200, json=[])
        return httpx.Response(200, text="ok")

    return handler


@pytest.fixture
async def lanraragi_connection(lrr_handler) -> AsyncGenerator[LanraragiConnection, None]:
    connection = LanraragiConnection(LRR_BASE_URL, transport=httpx.MockTransport(lrr_handler))
    yield connection
    await connection.aclose()


@pytest.fixture
def device_connection(test_settings: Settings, device_handler) -> DeviceConnection:
    return DeviceConnection(
        DEVICE_BASE_URL,
        settings_file=test_settings.device_settings_file,
        transport=httpx.MockTransport(device_handler),
    )


@pytest.fixture
async def job_manager() -> AsyncGenerator[JobManager, None]:
    """A job manager whose runner each test replaces."""

    async def not_configured(archive_id, settings, on_event):
        raise RuntimeError("no conversion runner configured")

    manager = JobManager(not_configured, ttl_seconds=60)
    yield manager
    await manager.shutdown(timeout=5)


@pytest.fixture
async def client(
    test_settings: Settings,
    lanraragi_connection: LanraragiConnection,
    device_connection: DeviceConnection,
    job_manager: JobManager,
) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client with dependency overrides."""
    batch_manager = BatchManager(job_manager, max_parallel=4)

    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_lanraragi_connection] = lambda: lanraragi_connection
    app.dependency_overrides[get_device_connection] = lambda: device_connection
    app.dependency_overrides[get_job_manager] = lambda: job_manager
    app.dependency_overrides[get_batch_manager] = lambda: batch_manager

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    await batch_manager.shutdown()
    app.dependency_overrides.clear()


@pytest.fixture
def image_bytes() -> Callable[..., bytes]:
    """Factory for encoded test images."""
    return make_image_bytes
