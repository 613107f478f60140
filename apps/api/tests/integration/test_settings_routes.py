"""Integration tests for health, settings and device endpoints."""

import httpx
import pytest
from httpx import AsyncClient


@pytest.fixture
def lrr_state() -> dict:
    return {"up": True, "reachable": True}


@pytest.fixture
def lrr_handler(lrr_state):
    def handler(request: httpx.Request) -> httpx.Response:
        if not lrr_state["reachable"]:
            raise httpx.ConnectError("All connection attempts failed", request=request)
        if not lrr_state["up"]:
            return httpx.Response(503, text="down")
        if request.url.path == "/api/info":
            return httpx.Response(200, json={"name": "LANraragi", "version": "0.9.21"})
        return httpx.Response(404, text="not found")

    return handler


@pytest.fixture
def device_handler():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/files":
            return httpx.Response(
                200,
                json=[
                    {"name": "manga", "size": 0, "isDirectory": True},
                    {"name": "book.xtc", "size": 1234, "isDirectory": False},
                ],
            )
        if request.url.path == "/mkdir":
            return httpx.Response(200, text="Folder created")
        return httpx.Response(404)

    return handler


class TestHealth:
    """Tests for /health."""

    @pytest.mark.asyncio
    async def test_health_ok(self, client: AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["lanraragi"]["version"] == "0.9.21"
        assert data["converter"] == "available"

    @pytest.mark.asyncio
    async def test_health_reports_unreachable_server(self, client: AsyncClient, lrr_state) -> None:
        lrr_state["up"] = False

        response = await client.get("/health")

        assert response.status_code == 500
        assert response.json()["ok"] is False
        assert "503" in response.json()["error"]

    @pytest.mark.asyncio
    async def test_health_reports_connection_failure(self, client: AsyncClient, lrr_state) -> None:
        lrr_state["reachable"] = False

        response = await client.get("/health")

        assert response.status_code == 500
        data = response.json()
        assert data["ok"] is False
        assert data["converter"] == "available"
        assert "All connection attempts failed" in data["error"]

    @pytest.mark.asyncio
    async def test_archive_routes_map_connection_failure_to_bad_gateway(
        self, client: AsyncClient, lrr_state
    ) -> None:
        lrr_state["reachable"] = False

        for path in ("/archives", "/archives/abc", "/archives/abc/thumbnail"):
            response = await client.get(path)

            assert response.status_code == 502, path
            assert "All connection attempts failed" in response.json()["error"]


class TestSettingsRoutes:
    """Tests for defaults and runtime settings."""

    @pytest.mark.asyncio
    async def test_defaults(self, client: AsyncClient) -> None:
        response = await client.get("/settings/defaults")

        assert response.status_code == 200
        settings = response.json()["settings"]
        assert settings["orientation"] == "landscape"
        assert settings["splitMode"] == "overlap"
        assert settings["contrastBoost"] == "4"

    @pytest.mark.asyncio
    async def test_lanraragi_settings_round_trip(self, client: AsyncClient, lanraragi_connection) -> None:
        response = await client.post("/lanraragi/settings", json={"baseUrl": "lrr.lan:3000", "apiKey": "k"})

        assert response.status_code == 200
        assert response.json() == {"ok": True, "settings": {"baseUrl": "http://lrr.lan:3000", "hasApiKey": True}}
        assert lanraragi_connection.version == 1

        current = await client.get("/lanraragi/settings")
        assert current.json()["settings"]["baseUrl"] == "http://lrr.lan:3000"

    @pytest.mark.asyncio
    async def test_lanraragi_settings_require_a_field(self, client: AsyncClient) -> None:
        response = await client.post("/lanraragi/settings", json={})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_invalid_lanraragi_url(self, client: AsyncClient) -> None:
        response = await client.post("/lanraragi/settings", json={"baseUrl": "   "})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_device_settings_update(self, client: AsyncClient, test_settings) -> None:
        response = await client.post("/device/settings", json={"path": "manga"})

        assert response.status_code == 200
        assert response.json()["settings"] == {"baseUrl": "http://xteink.test", "path": "/manga"}
        assert test_settings.device_settings_file.exists()


class TestDeviceRoutes:
    """Tests for device browsing."""

    @pytest.mark.asyncio
    async def test_list_files_uses_defaults(self, client: AsyncClient) -> None:
        response = await client.get("/device/files")

        assert response.status_code == 200
        data = response.json()
        assert data["baseUrl"] == "http://xteink.test"
        assert data["path"] == "/"
        assert [entry["name"] for entry in data["files"]] == ["manga", "book.xtc"]
        assert data["files"][0]["isDirectory"] is True

    @pytest.mark.asyncio
    async def test_list_files_with_override(self, client: AsyncClient) -> None:
        response = await client.get("/device/files", params={"baseUrl": "other.test", "path": "manga"})

        assert response.status_code == 200
        assert response.json()["baseUrl"] == "http://other.test"
        assert response.json()["path"] == "/manga"

    @pytest.mark.asyncio
    async def test_mkdir(self, client: AsyncClient) -> None:
        response = await client.post("/device/mkdir", json={"name": " new folder ", "path": "/manga"})

        assert response.status_code == 200
        assert response.json() == {
            "ok": True,
            "baseUrl": "http://xteink.test",
            "path": "/manga",
            "name": "new folder",
        }

    @pytest.mark.asyncio
    async def test_mkdir_rejects_blank_name(self, client: AsyncClient) -> None:
        response = await client.post("/device/mkdir", json={"name": "   "})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_device_failure_is_bad_gateway(self, client: AsyncClient, device_connection) -> None:
        device_connection.transport = httpx.MockTransport(lambda request: httpx.Response(500, text="sd error"))

        response = await client.get("/device/files")

        assert response.status_code == 502
        assert "sd error" in response.json()["error"]
