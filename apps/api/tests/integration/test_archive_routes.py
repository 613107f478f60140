"""Integration tests for archive browsing, facets and tag suggestions."""

import httpx
import pytest
from httpx import AsyncClient

from api.routes.archives import TagStatsCache, get_tag_cache, rank_tags
from main import app

TAG_STATS = [
    {"namespace": "artist", "text": "bob", "weight": "3"},
    {"namespace": "artist", "text": "Alice", "weight": 12},
    {"namespace": "group", "text": "Circle", "weight": "5"},
    {"namespace": "", "text": "colour", "weight": 2},
    {"namespace": "parody", "text": "original", "weight": 40},
    {"namespace": "female", "text": "", "weight": 1},
]


@pytest.fixture
def lrr_calls() -> list[httpx.Request]:
    return []


@pytest.fixture
def lrr_handler(lrr_calls, image_bytes):
    def handler(request: httpx.Request) -> httpx.Response:
        lrr_calls.append(request)
        path = request.url.path
        if path == "/api/search":
            return httpx.Response(
                200,
                json={"recordsTotal": 1, "recordsFiltered": 1, "data": [{"arcid": "abc", "title": "My Book"}]},
            )
        if path == "/api/database/stats":
            return httpx.Response(200, json=TAG_STATS)
        if path == "/api/archives/abc/metadata":
            return httpx.Response(200, json={"arcid": "abc", "title": "My Book", "pagecount": 3})
        if path == "/api/archives/abc/thumbnail":
            return httpx.Response(200, content=image_bytes(), headers={"content-type": "image/jpeg"})
        if path == "/api/archives/abc/page":
            return httpx.Response(200, content=image_bytes("PNG"), headers={"content-type": "image/png"})
        return httpx.Response(404, text="not found")

    return handler


@pytest.fixture(autouse=True)
def tag_cache():
    cache = TagStatsCache()
    app.dependency_overrides[get_tag_cache] = lambda: cache
    yield cache
    app.dependency_overrides.pop(get_tag_cache, None)


class TestArchiveRoutes:
    """Tests for the LANraragi proxy endpoints."""

    @pytest.mark.asyncio
    async def test_search_passes_query(self, client: AsyncClient, lrr_calls) -> None:
        response = await client.get("/archives", params={"q": "artist:bob", "start": 50, "sortby": "date_added"})

        assert response.status_code == 200
        assert response.json()["data"][0]["arcid"] == "abc"
        params = lrr_calls[-1].url.params
        assert params["filter"] == "artist:bob"
        assert params["start"] == "50"
        assert params["sortby"] == "date_added"
        assert params["order"] == "asc"

    @pytest.mark.asyncio
    async def test_search_rejects_unknown_sort(self, client: AsyncClient) -> None:
        response = await client.get("/archives", params={"sortby": "random"})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_metadata(self, client: AsyncClient) -> None:
        response = await client.get("/archives/abc")

        assert response.status_code == 200
        assert response.json()["title"] == "My Book"
        assert response.json()["pagecount"] == 3

    @pytest.mark.asyncio
    async def test_unknown_archive_is_bad_gateway(self, client: AsyncClient) -> None:
        response = await client.get("/archives/missing")

        assert response.status_code == 502
        assert "404" in response.json()["error"]

    @pytest.mark.asyncio
    async def test_thumbnail_is_cacheable(self, client: AsyncClient) -> None:
        response = await client.get("/archives/abc/thumbnail")

        assert response.status_code == 200
        assert response.headers["content-type"] == "image/jpeg"
        assert response.headers["cache-control"] == "public, max-age=300"

    @pytest.mark.asyncio
    async def test_page_proxy(self, client: AsyncClient, lrr_calls) -> None:
        response = await client.get("/archives/abc/page", params={"path": "001.png"})

        assert response.status_code == 200
        assert response.headers["content-type"] == "image/png"
        assert response.headers["cache-control"] == "no-store"
        assert lrr_calls[-1].url.params["path"] == "001.png"

    @pytest.mark.asyncio
    async def test_page_requires_path(self, client: AsyncClient) -> None:
        response = await client.get("/archives/abc/page")

        assert response.status_code == 422


class TestFacets:
    """Tests for artist/group facets."""

    @pytest.mark.asyncio
    async def test_artist_facets_sorted(self, client: AsyncClient) -> None:
        response = await client.get("/facets", params={"namespace": "artist"})

        assert response.status_code == 200
        assert response.json() == {
            "namespace": "artist",
            "total": 2,
            "data": [{"name": "Alice", "count": 12}, {"name": "bob", "count": 3}],
        }

    @pytest.mark.asyncio
    async def test_facet_filter(self, client: AsyncClient) -> None:
        response = await client.get("/facets", params={"namespace": "group", "q": "CIR"})

        assert response.json()["data"] == [{"name": "Circle", "count": 5}]

    @pytest.mark.asyncio
    async def test_other_namespaces_rejected(self, client: AsyncClient) -> None:
        response = await client.get("/facets", params={"namespace": "parody"})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_stats_are_cached_until_settings_change(
        self, client: AsyncClient, lrr_calls, lanraragi_connection
    ) -> None:
        await client.get("/facets", params={"namespace": "artist"})
        await client.get("/tags/suggest", params={"q": "a"})
        stats_calls = [call for call in lrr_calls if call.url.path == "/api/database/stats"]
        assert len(stats_calls) == 1

        lanraragi_connection.update(api_key="new-key")
        await client.get("/facets", params={"namespace": "artist"})
        stats_calls = [call for call in lrr_calls if call.url.path == "/api/database/stats"]
        assert len(stats_calls) == 2
        assert stats_calls[-1].url.params["key"] == "new-key"


class TestTagSuggest:
    """Tests for tag suggestions."""

    @pytest.mark.asyncio
    async def test_prefix_matches_first(self, client: AsyncClient) -> None:
        response = await client.get("/tags/suggest", params={"q": "ar"})

        assert response.status_code == 200
        assert response.json() == {"total": 3, "data": ["artist:Alice", "artist:bob", "parody:original"]}

    @pytest.mark.asyncio
    async def test_limit(self, client: AsyncClient) -> None:
        response = await client.get("/tags/suggest", params={"limit": 2})

        data = response.json()
        assert data["total"] == 5
        assert data["data"] == ["artist:Alice", "artist:bob"]

    @pytest.mark.asyncio
    async def test_limit_bounds(self, client: AsyncClient) -> None:
        response = await client.get("/tags/suggest", params={"limit": 0})

        assert response.status_code == 422

    def test_rank_tags_orders_prefix_before_substring(self) -> None:
        tags = ["female:glasses", "glasses", "male:glasses", "sunglasses"]

        assert rank_tags(tags, "glass") == ["glasses", "female:glasses", "male:glasses", "sunglasses"]

    @pytest.mark.asyncio
    async def test_cache_expires(self) -> None:
        now = [0.0]
        cache = TagStatsCache(max_age=10, clock=lambda: now[0])
        calls = []

        class Client:
            async def get_tag_stats(self, minweight):
                calls.append(minweight)
                return TAG_STATS

        class Connection:
            version = 0
            client = Client()

        await cache.get(Connection())
        now[0] = 5
        await cache.get(Connection())
        now[0] = 11
        await cache.get(Connection())

        assert calls == [1, 1]
