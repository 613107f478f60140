"""OPDS (Atom) catalog feeds over the LANraragi library."""

import asyncio
import logging
import re
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal
from urllib.parse import quote, urlencode

from services.connections import LanraragiConnection

logger = logging.getLogger(__name__)

ATOM_NS = "http://www.w3.org/2005/Atom"
OPDS_NS = "http://opds-spec.org/2010/catalog"
FEED_AUTHOR = "lanraragi-xtc-bridge"

CATALOG_TYPE = "application/atom+xml;profile=opds-catalog"
NAVIGATION_TYPE = f"{CATALOG_TYPE};kind=navigation"
ACQUISITION_REL = "http://opds-spec.org/acquisition"
THUMBNAIL_REL = "http://opds-spec.org/image/thumbnail"
FEED_MEDIA_TYPE = "application/atom+xml; charset=utf-8"

FACET_CACHE_SECONDS = 5 * 60
TITLE_CACHE_SECONDS = 15 * 60

LETTERS = [chr(code) for code in range(ord("A"), ord("Z") + 1)]
LETTER_BUCKETS = ["0-9", *LETTERS, "#"]

Direction = Literal["asc", "desc"]
FacetNamespace = Literal["artist", "group"]


def bucket_for_name(name: str) -> str:
    """Letter bucket of a name: ``A``..``Z``, ``0-9``, or ``#`` for everything else."""
    first = name.strip()[:1].upper()
    if "A" <= first <= "Z":
        return first
    if "0" <= first <= "9":
        return "0-9"
    return "#"


def normalize_bucket(value: str | None) -> str | None:
    """Map a ``letter`` query value to a bucket, or ``None`` when it names no bucket."""
    if not value:
        return None
    value = value.strip().upper()
    if value in ("0-9", "#"):
        return value
    if len(value) == 1 and "A" <= value <= "Z":
        return value
    if len(value) == 1 and "0" <= value <= "9":
        return "0-9"
    return None


def title_bucket_order(direction: Direction) -> list[str]:
    letters = list(reversed(LETTERS)) if direction == "desc" else LETTERS
    return ["0-9", *letters, "#"]


def query_string(**params: Any) -> str:
    """``?key=value`` pairs in argument order, leaving out empty values."""
    kept = {key: value for key, value in params.items() if value is not None and value != ""}
    return f"?{urlencode(kept)}" if kept else ""


def atom_timestamp(unix_seconds: Any = None) -> str:
    """ISO-8601 UTC time of a unix timestamp, or of now when it is missing or not positive."""
    try:
        seconds = float(unix_seconds)
    except (TypeError, ValueError):
        seconds = 0.0
    moment = datetime.fromtimestamp(seconds, tz=timezone.utc) if seconds > 0 else datetime.now(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


def natural_key(name: str) -> list[Any]:
    """Case-insensitive sort key that orders embedded numbers numerically."""
    return [int(part) if part.isdigit() else part.casefold() for part in re.split(r"(\d+)", name)]


class OpdsFeed:
    """
    One Atom feed document.

    ``base_url`` is the server's public URL; every id and link in the feed is
    made absolute against it.
    """

    def __init__(self, base_url: str, path: str, title: str, subtitle: str | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.root = ET.Element("feed", {"xmlns": ATOM_NS, "xmlns:opds": OPDS_NS})
        self.updated = atom_timestamp()
        ET.SubElement(self.root, "id").text = self.url(path)
        ET.SubElement(self.root, "title").text = title
        ET.SubElement(self.root, "updated").text = self.updated
        author = ET.SubElement(self.root, "author")
        ET.SubElement(author, "name").text = FEED_AUTHOR
        ET.SubElement(self.root, "link", {"rel": "self", "type": CATALOG_TYPE, "href": self.url(path)})
        if subtitle:
            ET.SubElement(self.root, "subtitle").text = subtitle

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def add_navigation(self, entry_id: str, title: str, href: str, summary: str | None = None) -> None:
        entry = ET.SubElement(self.root, "entry")
        ET.SubElement(entry, "id").text = self.url(entry_id)
        ET.SubElement(entry, "title").text = title
        ET.SubElement(entry, "updated").text = self.updated
        if summary:
            ET.SubElement(entry, "summary").text = summary
        ET.SubElement(entry, "link", {"rel": "subsection", "type": NAVIGATION_TYPE, "href": self.url(href)})

    def add_archive(self, record: dict[str, Any]) -> None:
        """Acquisition entry for one archive, downloading through the converter."""
        archive_id = str(record.get("arcid") or "")
        quoted = quote(archive_id, safe="")
        entry = ET.SubElement(self.root, "entry")
        ET.SubElement(entry, "id").text = self.url(f"/opds/item/{quoted}")
        ET.SubElement(entry, "title").text = str(record.get("title") or record.get("filename") or archive_id)
        ET.SubElement(entry, "updated").text = atom_timestamp(record.get("lastreadtime"))
        ET.SubElement(entry, "summary").text = str(record.get("summary") or "")
        ET.SubElement(entry, "category", {"term": "tags", "label": str(record.get("tags") or "")})
        ET.SubElement(
            entry,
            "link",
            {"rel": THUMBNAIL_REL, "type": "image/jpeg", "href": self.url(f"/archives/{quoted}/thumbnail")},
        )
        download = self.url(f"/opds/download/{quoted}")
        for media_type in ("application/epub+zip", "application/octet-stream"):
            ET.SubElement(entry, "link", {"rel": ACQUISITION_REL, "type": media_type, "href": download})

    def to_bytes(self) -> bytes:
        return ET.tostring(self.root, encoding="utf-8", xml_declaration=True)


@dataclass
class FacetItem:
    name: str
    count: int
    bucket: str


def merge_facets(stats: list[dict[str, Any]], namespace: str) -> list[FacetItem]:
    """Tags of one namespace, merged case-insensitively with their weights summed."""
    merged: dict[str, FacetItem] = {}
    for row in stats:
        if str(row.get("namespace") or "").lower() != namespace:
            continue
        name = str(row.get("text") or "").strip()
        if not name:
            continue
        try:
            count = int(float(row.get("weight") or 0))
        except (TypeError, ValueError):
            count = 0
        existing = merged.get(name.lower())
        if existing is None:
            merged[name.lower()] = FacetItem(name=name, count=count, bucket=bucket_for_name(name))
        else:
            existing.count += count
    return sorted(merged.values(), key=lambda item: natural_key(item.name))


@dataclass
class TitleBuckets:
    """Archives sorted by title, bucketed by first letter as chunks are fetched."""

    version: int
    touched_at: float
    next_start: int = 0
    done: bool = False
    buckets: dict[str, list[dict[str, Any]]] = field(
        default_factory=lambda: {bucket: [] for bucket in LETTER_BUCKETS}
    )


class OpdsCatalog:
    """
    Cached views of the library used by the catalog feeds.

    Facet lists are refetched every few minutes. Title buckets fill lazily, one
    search page at a time, until a requested bucket holds enough entries. Both
    are dropped when the LANraragi connection version changes.
    """

    def __init__(
        self,
        facet_max_age: float = FACET_CACHE_SECONDS,
        title_max_age: float = TITLE_CACHE_SECONDS,
        clock=time.monotonic,
    ) -> None:
        self.facet_max_age = facet_max_age
        self.title_max_age = title_max_age
        self._clock = clock
        self._facets: dict[str, tuple[int, float, list[FacetItem]]] = {}
        self._titles: dict[str, TitleBuckets] = {}
        self._title_lock = asyncio.Lock()

    def clear(self) -> None:
        self._facets.clear()
        self._titles.clear()

    async def facet_items(self, connection: LanraragiConnection, namespace: FacetNamespace) -> list[FacetItem]:
        now = self._clock()
        cached = self._facets.get(namespace)
        if cached is not None:
            version, fetched_at, items = cached
            if version == connection.version and now - fetched_at < self.facet_max_age:
                return items

        items = merge_facets(await connection.client.get_tag_stats(1), namespace)
        self._facets[namespace] = (connection.version, now, items)
        logger.debug("Cached %d %s facets (connection version %d)", len(items), namespace, connection.version)
        return items

    def _title_state(self, connection: LanraragiConnection, direction: Direction) -> TitleBuckets:
        now = self._clock()
        state = self._titles.get(direction)
        if state is None or state.version != connection.version or now - state.touched_at >= self.title_max_age:
            state = TitleBuckets(version=connection.version, touched_at=now)
            self._titles[direction] = state
        return state

    async def _fill_chunk(self, connection: LanraragiConnection, direction: Direction, state: TitleBuckets) -> None:
        result = await connection.client.search_archives(
            filter="", start=state.next_start, sortby="title", order=direction
        )
        records = result.get("data") or []
        total = int(result.get("recordsFiltered") or 0)
        for record in records:
            name = str(record.get("title") or record.get("filename") or "")
            state.buckets[bucket_for_name(name)].append(record)
        state.next_start += len(records)
        state.done = not records or state.next_start >= total
        state.touched_at = self._clock()
        logger.debug(
            "Title buckets %s filled to %d of %d (done=%s)", direction, state.next_start, total, state.done
        )

    async def title_bucket(
        self,
        connection: LanraragiConnection,
        direction: Direction,
        bucket: str,
        needed: int,
    ) -> tuple[list[dict[str, Any]], bool]:
        """
        Entries of one title bucket, fetching more chunks until it holds ``needed``.

        Returns:
            The bucket's entries so far and whether the whole library has been read.
        """
        async with self._title_lock:
            state = self._title_state(connection, direction)
            while len(state.buckets[bucket]) < needed and not state.done:
                await self._fill_chunk(connection, direction, state)
            return state.buckets[bucket], state.done
