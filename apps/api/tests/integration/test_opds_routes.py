"""Integration tests for the OPDS catalog feeds and downloads."""

import io
import sys
import textwrap
import xml.etree.ElementTree as ET
import zipfile
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from httpx import AsyncClient

from api.routes.opds import get_opds_catalog
from core.config import Settings, get_settings
from main import app
from services.opds_catalog import ACQUISITION_REL, OpdsCatalog

NS = {"atom": "http://www.w3.org/2005/Atom"}
PUBLIC_URL = "http://bridge.test"
SEARCH_PAGE = 10

LIBRARY = [
    *({"arcid": f"a{n:02d}", "title": f"Alpha {n:02d}", "tags": "artist:Alice"} for n in range(1, 13)),
    {"arcid": "b1", "title": "beta", "tags": "group:Circle"},
    {"arcid": "n1", "title": "42 Stories", "tags": ""},
    {"arcid": "m1", "title": "", "filename": "_misc.cbz", "tags": ""},
    {"arcid": "z1", "title": "Zeta", "tags": "artist:bob", "lastreadtime": 1700000000},
]

TAG_STATS = [
    {"namespace": "artist", "text": "Alice", "weight": "3"},
    {"namespace": "Artist", "text": "alice ", "weight": 2},
    {"namespace": "artist", "text": "bob", "weight": "1"},
    {"namespace": "artist", "text": "99ers", "weight": "2"},
    {"namespace": "group", "text": "Circle", "weight": "4"},
    {"namespace": "artist", "text": "", "weight": "9"},
]

STAND_IN_TOOL = textwrap.dedent(
    """
    import sys
    from pathlib import Path

    workspace = Path(sys.argv[1])
    out = workspace / "xtc_output"
    out.mkdir(exist_ok=True)
    for cbz in workspace.glob("*.cbz"):
        (out / (cbz.stem + ".xtc")).write_bytes(b"XTC" + cbz.read_bytes()[:4])
    """
)


def zip_bytes(names: list[str]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name in names:
            archive.writestr(name, b"data")
    return buffer.getvalue()


def search(params: httpx.QueryParams) -> dict:
    records = sorted(
        LIBRARY,
        key=lambda record: (record["title"] or record["filename"]).casefold(),
        reverse=params.get("order") == "desc",
    )
    needle = params.get("filter", "").lower()
    if needle:
        records = [record for record in records if needle in record["tags"].lower()]
    start = int(params.get("start", 0))
    return {"recordsTotal": len(LIBRARY), "recordsFiltered": len(records), "data": records[start : start + SEARCH_PAGE]}


def parse_feed(response: httpx.Response) -> ET.Element:
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/atom+xml")
    assert response.headers["cache-control"] == "no-store"
    return ET.fromstring(response.content)


def entry_titles(feed: ET.Element) -> list[str]:
    return [entry.findtext("atom:title", namespaces=NS) for entry in feed.findall("atom:entry", NS)]


def navigation_href(feed: ET.Element, title: str) -> str:
    for entry in feed.findall("atom:entry", NS):
        if entry.findtext("atom:title", namespaces=NS) == title:
            return entry.find("atom:link", NS).get("href")
    raise AssertionError(f"no entry titled {title!r}")


def acquisition_entries(feed: ET.Element) -> list[ET.Element]:
    return [
        entry
        for entry in feed.findall("atom:entry", NS)
        if any(link.get("rel") == ACQUISITION_REL for link in entry.findall("atom:link", NS))
    ]


@pytest.fixture
def test_settings(test_settings: Settings) -> Settings:
    return test_settings.model_copy(update={"server_public_url": f"{PUBLIC_URL}/"})


@pytest.fixture
def search_calls() -> list[httpx.QueryParams]:
    return []


@pytest.fixture
def lrr_handler(search_calls):
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/search":
            search_calls.append(request.url.params)
            return httpx.Response(200, json=search(request.url.params))
        if path == "/api/database/stats":
            return httpx.Response(200, json=TAG_STATS)
        if path == "/api/archives/abc/metadata":
            return httpx.Response(
                200,
                json={"arcid": "abc", "title": "My Book", "tags": "artist:Someone", "extension": "cbz", "pagecount": 2},
            )
        if path == "/api/archives/abc/download":
            return httpx.Response(
                200,
                content=zip_bytes(["001.jpg", "002.jpg"]),
                headers={"content-type": "application/zip"},
            )
        if path == "/api/archives/abc/files":
            return httpx.Response(200, json={"pages": []})
        return httpx.Response(404, text="not found")

    return handler


@pytest.fixture(autouse=True)
def catalog():
    catalog = OpdsCatalog()
    app.dependency_overrides[get_opds_catalog] = lambda: catalog
    yield catalog
    app.dependency_overrides.pop(get_opds_catalog, None)


class TestNavigationFeeds:
    """Tests for the catalog root and archive listings."""

    @pytest.mark.asyncio
    async def test_root_lists_sections(self, client: AsyncClient) -> None:
        feed = parse_feed(await client.get("/opds"))

        assert feed.findtext("atom:title", namespaces=NS) == "LANraragi XTC Catalog"
        assert feed.find("atom:link[@rel='self']", NS).get("href") == f"{PUBLIC_URL}/opds"
        assert entry_titles(feed) == [
            "Recently Added",
            "Titles A-Z",
            "Titles Z-A",
            "Browse by Artist",
            "Browse by Group",
        ]
        recent = urlsplit(navigation_href(feed, "Recently Added"))
        assert recent.path == "/opds/list"
        assert parse_qs(recent.query)["sortby"] == ["date_added"]
        assert parse_qs(recent.query)["order"] == ["desc"]

    @pytest.mark.asyncio
    async def test_root_with_listing_parameters_searches(self, client: AsyncClient, search_calls) -> None:
        feed = parse_feed(await client.get("/opds", params={"q": "artist:alice"}))

        assert feed.findtext("atom:title", namespaces=NS) == "Results: artist:alice"
        assert search_calls[0]["filter"] == "artist:alice"
        assert len(acquisition_entries(feed)) == SEARCH_PAGE
        assert "Next Page" in entry_titles(feed)
        assert "Back to OPDS Home" not in entry_titles(feed)

    @pytest.mark.asyncio
    async def test_list_second_page(self, client: AsyncClient, search_calls) -> None:
        feed = parse_feed(await client.get("/opds/list", params={"page": 2, "pageSize": 10, "title": "Everything"}))

        assert search_calls[0]["start"] == "10"
        assert feed.findtext("atom:title", namespaces=NS) == "Everything"
        assert entry_titles(feed)[:2] == ["Back to OPDS Home", "Previous Page"]
        assert "Next Page" not in entry_titles(feed)
        assert len(acquisition_entries(feed)) == len(LIBRARY) - 10
        previous = parse_qs(urlsplit(navigation_href(feed, "Previous Page")).query)
        assert previous["page"] == ["1"]
        assert previous["title"] == ["Everything"]

    @pytest.mark.asyncio
    async def test_archive_entry_links(self, client: AsyncClient) -> None:
        feed = parse_feed(await client.get("/opds/list", params={"q": "artist:bob"}))

        (entry,) = acquisition_entries(feed)
        links = {(link.get("rel"), link.get("type")): link.get("href") for link in entry.findall("atom:link", NS)}
        assert entry.findtext("atom:id", namespaces=NS) == f"{PUBLIC_URL}/opds/item/z1"
        assert entry.findtext("atom:updated", namespaces=NS) == "2023-11-14T22:13:20Z"
        assert entry.find("atom:category", NS).get("label") == "artist:bob"
        assert links[(ACQUISITION_REL, "application/octet-stream")] == f"{PUBLIC_URL}/opds/download/z1"
        assert links[("http://opds-spec.org/image/thumbnail", "image/jpeg")] == f"{PUBLIC_URL}/archives/z1/thumbnail"

    @pytest.mark.asyncio
    async def test_invalid_page_size(self, client: AsyncClient) -> None:
        response = await client.get("/opds/list", params={"pageSize": 5})

        assert response.status_code == 422


class TestTitleBrowsing:
    """Tests for letter-sectioned title browsing."""

    @pytest.mark.asyncio
    async def test_sections_without_letter(self, client: AsyncClient, search_calls) -> None:
        feed = parse_feed(await client.get("/opds/titles", params={"dir": "desc"}))

        titles = entry_titles(feed)
        assert feed.findtext("atom:title", namespaces=NS) == "Titles Z-A"
        assert titles[:3] == ["Back to OPDS Home", "0-9", "Z"]
        assert titles[-1] == "#"
        assert len(titles) == 1 + 28
        assert search_calls == []

    @pytest.mark.asyncio
    async def test_section_pages_fill_lazily(self, client: AsyncClient, search_calls) -> None:
        feed = parse_feed(await client.get("/opds/titles", params={"letter": "a", "pageSize": 10}))

        assert feed.findtext("atom:title", namespaces=NS) == "Titles A-Z: A"
        assert len(acquisition_entries(feed)) == 10
        assert "Next Page" in entry_titles(feed)
        assert [params["start"] for params in search_calls] == ["0", "10"]

        feed = parse_feed(await client.get("/opds/titles", params={"letter": "A", "page": 2, "pageSize": 10}))

        assert len(acquisition_entries(feed)) == 2
        assert "Next Page" not in entry_titles(feed)
        assert "Previous Page" in entry_titles(feed)
        assert len(search_calls) == 2

    @pytest.mark.asyncio
    async def test_digit_and_symbol_sections(self, client: AsyncClient) -> None:
        digits = parse_feed(await client.get("/opds/titles", params={"letter": "4"}))
        symbols = parse_feed(await client.get("/opds/titles", params={"letter": "#"}))

        assert [e.findtext("atom:title", namespaces=NS) for e in acquisition_entries(digits)] == ["42 Stories"]
        assert [e.findtext("atom:title", namespaces=NS) for e in acquisition_entries(symbols)] == ["_misc.cbz"]


class TestFacetBrowsing:
    """Tests for artist and group browsing."""

    @pytest.mark.asyncio
    async def test_buckets_with_counts(self, client: AsyncClient) -> None:
        feed = parse_feed(await client.get("/opds/facets/artist"))

        assert feed.findtext("atom:title", namespaces=NS) == "Artists (A-Z)"
        assert entry_titles(feed) == ["Back to OPDS Home", "0-9 (1)", "A (1)", "B (1)"]
        bucket = parse_qs(urlsplit(navigation_href(feed, "A (1)")).query)
        assert bucket["letter"] == ["A"]

    @pytest.mark.asyncio
    async def test_bucket_lists_merged_names(self, client: AsyncClient) -> None:
        feed = parse_feed(await client.get("/opds/facets/artist", params={"letter": "a"}))

        assert entry_titles(feed) == ["Back to Artists A-Z", "Alice (5)"]
        listing = urlsplit(navigation_href(feed, "Alice (5)"))
        assert listing.path == "/opds/list"
        assert parse_qs(listing.query)["q"] == ["artist:Alice"]
        assert parse_qs(listing.query)["title"] == ["Artist: Alice"]

    @pytest.mark.asyncio
    async def test_groups(self, client: AsyncClient) -> None:
        feed = parse_feed(await client.get("/opds/facets/group", params={"letter": "C"}))

        assert entry_titles(feed) == ["Back to Groups A-Z", "Circle (4)"]

    @pytest.mark.asyncio
    async def test_unknown_namespace(self, client: AsyncClient) -> None:
        response = await client.get("/opds/facets/parody")

        assert response.status_code == 422


class TestOpdsDownload:
    """Tests for converting an archive on download."""

    @pytest.fixture
    def tool_settings(self, test_settings: Settings, tmp_path: Path) -> Settings:
        script = tmp_path / "tools" / "stand_in.py"
        script.write_text(STAND_IN_TOOL, encoding="utf-8")
        return test_settings.model_copy(
            update={"cbz2xtc_path": script, "python_bin": sys.executable, "use_lrr_page_extraction": False}
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/opds/download/abc", "/opds/download/abc.xtc", "/opds/download/abc.XTC"])
    async def test_streams_converted_file(self, client: AsyncClient, tool_settings: Settings, path: str) -> None:
        app.dependency_overrides[get_settings] = lambda: tool_settings

        response = await client.get(path)

        assert response.status_code == 200
        assert response.content.startswith(b"XTC")
        assert response.headers["content-type"] == "application/octet-stream"
        assert "My%20Book.xtc" in response.headers["content-disposition"]
        assert list(tool_settings.temp_root_absolute.iterdir()) == []

    @pytest.mark.asyncio
    async def test_unknown_archive_is_bad_gateway(self, client: AsyncClient, tool_settings: Settings) -> None:
        app.dependency_overrides[get_settings] = lambda: tool_settings

        response = await client.get("/opds/download/nope.xtc")

        assert response.status_code == 502

    @pytest.mark.asyncio
    async def test_empty_id(self, client: AsyncClient) -> None:
        response = await client.get("/opds/download/.xtc")

        assert response.status_code == 400
