"""Unit tests for the conversion pipeline and download naming."""

import io
import sys
import textwrap
import zipfile
from pathlib import Path

import httpx
import pytest

from core.config import Settings
from services.conversion_pipeline import (
    ConversionPipeline,
    build_download_name,
    sanitize_segment,
)
from services.conversion_settings import ConversionSettings
from services.converter_engine import ConversionError, ConverterNotFoundError
from services.events import ConversionDone, StageChanged
from services.lanraragi_client import ArchiveRecord, LanraragiClient

STAND_IN_TOOL = textwrap.dedent(
    """
    import sys
    import zipfile
    from pathlib import Path

    workspace = Path(sys.argv[1])
    out = workspace / "xtc_output"
    out.mkdir(exist_ok=True)
    for cbz in workspace.glob("*.cbz"):
        with zipfile.ZipFile(cbz) as archive:
            names = archive.namelist()
        (out / (cbz.stem + ".xtc")).write_text("pages=" + ",".join(names))
        print("output " + cbz.stem + ".xtc pages=" + str(len(names)))
    """
)

NO_OUTPUT_TOOL = "print('nothing to do')\n"


def zip_bytes(names: list[str]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name in names:
            archive.writestr(name, b"data")
    return buffer.getvalue()


def lrr_transport(metadata: dict, archive: bytes) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/metadata"):
            return httpx.Response(200, json=metadata)
        if request.url.path.endswith("/download"):
            return httpx.Response(200, content=archive, headers={"content-type": "application/zip"})
        if request.url.path.endswith("/files"):
            return httpx.Response(200, json={"pages": []})
        return httpx.Response(404)

    return httpx.MockTransport(handler)


def pipeline_settings(test_settings: Settings, tmp_path: Path, source: str) -> Settings:
    script = tmp_path / "tools" / "tool.py"
    script.write_text(source, encoding="utf-8")
    return test_settings.model_copy(
        update={"cbz2xtc_path": script, "python_bin": sys.executable, "use_lrr_page_extraction": False}
    )


class TestDownloadName:
    """Tests for build_download_name."""

    @pytest.mark.parametrize(
        ("tags", "expected"),
        [
            ("group:Circle, artist:Someone, female:glasses", "[Circle (Someone)] My Book.xtc"),
            ("group:Circle", "[Circle] My Book.xtc"),
            ("artist:Someone", "(Someone) My Book.xtc"),
            ("", "My Book.xtc"),
        ],
    )
    def test_prefix_variants(self, tags: str, expected: str) -> None:
        metadata = ArchiveRecord(arcid="id", title="My Book", tags=tags)

        assert build_download_name(metadata) == expected

    def test_forbidden_characters_are_collapsed(self) -> None:
        metadata = ArchiveRecord(arcid="id", title='What?  A "Story" / Part: 1')

        assert build_download_name(metadata) == "What A Story Part 1.xtc"

    def test_falls_back_to_filename_then_id(self) -> None:
        assert build_download_name(ArchiveRecord(arcid="id", filename="file.cbz")) == "file.cbz.xtc"
        assert build_download_name(ArchiveRecord(arcid="abc123")) == "abc123.xtc"

    def test_length_cap_keeps_extension(self) -> None:
        name = build_download_name(ArchiveRecord(arcid="id", title="x" * 400))

        assert len(name) == 220
        assert name.endswith(".xtc")

    def test_sanitize_segment(self) -> None:
        assert sanitize_segment("My Book: Vol 1") == "My_Book_Vol_1"
        assert sanitize_segment("???") == "archive"
        assert len(sanitize_segment("a" * 300)) == 120


class TestConversionPipeline:
    """Tests for ConversionPipeline.convert with a stand-in cbz2xtc."""

    @pytest.mark.asyncio
    async def test_direct_download_conversion(self, test_settings: Settings, tmp_path: Path) -> None:
        metadata = {
            "arcid": "abc",
            "title": "My Book",
            "tags": "artist:Someone",
            "extension": "cbz",
            "pagecount": 2,
        }
        client = LanraragiClient("http://lrr.test", transport=lrr_transport(metadata, zip_bytes(["1.jpg", "2.jpg"])))
        settings = pipeline_settings(test_settings, tmp_path, STAND_IN_TOOL)
        events: list[object] = []

        artifact = await ConversionPipeline(client, settings).convert(
            "abc", ConversionSettings(orientation="portrait"), events.append
        )

        assert artifact.download_name == "(Someone) My Book.xtc"
        assert artifact.file_path.parent.name == "deliver"
        assert artifact.file_path.read_text() == "pages=1.jpg,2.jpg"
        assert artifact.file_size == artifact.file_path.stat().st_size
        assert artifact.workspace.parent == settings.temp_root_absolute
        stages = [event.stage for event in events if isinstance(event, StageChanged)]
        assert stages == ["metadata", "archive-download", "cbz2xtc"]
        assert isinstance(events[-1], ConversionDone)

        await artifact.dispose()
        await artifact.dispose()
        assert not artifact.workspace.exists()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_missing_output_cleans_workspace(self, test_settings: Settings, tmp_path: Path) -> None:
        metadata = {"arcid": "abc", "title": "Book", "extension": "zip", "pagecount": 1}
        client = LanraragiClient("http://lrr.test", transport=lrr_transport(metadata, zip_bytes(["1.png"])))
        settings = pipeline_settings(test_settings, tmp_path, NO_OUTPUT_TOOL)

        with pytest.raises(ConversionError, match="Book.xtc"):
            await ConversionPipeline(client, settings).convert("abc", ConversionSettings(orientation="portrait"))

        assert list(settings.temp_root_absolute.iterdir()) == []
        await client.aclose()

    @pytest.mark.asyncio
    async def test_missing_tool_fails_before_workspace(self, test_settings: Settings, tmp_path: Path) -> None:
        client = LanraragiClient("http://lrr.test", transport=lrr_transport({}, b""))
        settings = test_settings.model_copy(update={"cbz2xtc_path": tmp_path / "absent.py"})

        with pytest.raises(ConverterNotFoundError):
            await ConversionPipeline(client, settings).convert("abc", ConversionSettings())

        assert not settings.temp_root_absolute.exists()
        await client.aclose()
