"""Archive browsing endpoints proxied to LANraragi."""

import logging
import time
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from api.dependencies import get_lanraragi_connection
from api.schemas import FacetEntry, FacetsResponse, TagSuggestResponse
from services.connections import LanraragiConnection
from services.lanraragi_client import PagePayload

logger = logging.getLogger(__name__)

router = APIRouter()

TAG_CACHE_SECONDS = 5 * 60

SortBy = Literal["title", "progress", "lastreadtime", "size", "time_read", "date_added"]


class TagStatsCache:
    """
    Tag statistics from LANraragi, held for a few minutes.

    Entries are dropped whenever the connection version moves, so switching
    servers never serves the previous server's tags.
    """

    def __init__(self, max_age: float = TAG_CACHE_SECONDS, clock=time.monotonic) -> None:
        self.max_age = max_age
        self._clock = clock
        self._version: int | None = None
        self._fetched_at = 0.0
        self._stats: list[dict[str, Any]] | None = None

    def clear(self) -> None:
        self._stats = None
        self._version = None

    async def get(self, connection: LanraragiConnection) -> list[dict[str, Any]]:
        now = self._clock()
        if (
            self._stats is not None
            and self._version == connection.version
            and now - self._fetched_at < self.max_age
        ):
            return self._stats

        stats = await connection.client.get_tag_stats(1)
        self._stats = stats
        self._version = connection.version
        self._fetched_at = now
        logger.debug("Cached %d tag stats (connection version %d)", len(stats), connection.version)
        return stats


_tag_cache = TagStatsCache()


def get_tag_cache() -> TagStatsCache:
    return _tag_cache


def build_facets(stats: list[dict[str, Any]], namespace: str) -> list[FacetEntry]:
    entries = []
    for entry in stats:
        if entry.get("namespace") != namespace:
            continue
        try:
            count = int(float(entry.get("weight") or 0))
        except (TypeError, ValueError):
            count = 0
        entries.append(FacetEntry(name=str(entry.get("text", "")), count=count))
    return sorted(entries, key=lambda facet: facet.name.casefold())


def build_tag_list(stats: list[dict[str, Any]]) -> list[str]:
    tags = []
    for entry in stats:
        text = str(entry.get("text") or "").strip()
        if not text:
            continue
        namespace = entry.get("namespace")
        tags.append(f"{namespace}:{text}" if namespace else text)
    return sorted(tags, key=str.casefold)


def rank_tags(tags: list[str], query: str) -> list[str]:
    """Prefix matches first, then substring matches, each in list order."""
    q = query.strip().lower()
    if not q:
        return tags
    starts = [tag for tag in tags if tag.lower().startswith(q)]
    contains = [tag for tag in tags if not tag.lower().startswith(q) and q in tag.lower()]
    return starts + contains


def _image_response(payload: PagePayload, cache_control: str) -> Response:
    return Response(
        content=payload.content,
        media_type=payload.content_type or "image/jpeg",
        headers={"Cache-Control": cache_control},
    )


@router.get("/archives")
async def search_archives(
    q: str = Query(default=""),
    start: int = Query(default=0, ge=0),
    sortby: SortBy = Query(default="title"),
    order: Literal["asc", "desc"] = Query(default="asc"),
    lanraragi: LanraragiConnection = Depends(get_lanraragi_connection),
) -> dict[str, Any]:
    return await lanraragi.client.search_archives(filter=q, start=start, sortby=sortby, order=order)


@router.get("/archives/{archive_id}/thumbnail")
async def get_archive_thumbnail(
    archive_id: str,
    lanraragi: LanraragiConnection = Depends(get_lanraragi_connection),
) -> Response:
    payload = await lanraragi.client.get_thumbnail(archive_id)
    return _image_response(payload, "public, max-age=300")


@router.get("/archives/{archive_id}/page")
async def get_archive_page(
    archive_id: str,
    path: str = Query(min_length=1),
    lanraragi: LanraragiConnection = Depends(get_lanraragi_connection),
) -> Response:
    payload = await lanraragi.client.get_page(archive_id, path)
    return _image_response(payload, "no-store")


@router.get("/archives/{archive_id}")
async def get_archive(
    archive_id: str,
    lanraragi: LanraragiConnection = Depends(get_lanraragi_connection),
) -> dict[str, Any]:
    metadata = await lanraragi.client.get_metadata(archive_id)
    return metadata.model_dump()


@router.get("/facets", response_model=FacetsResponse)
async def list_facets(
    namespace: Literal["artist", "group"],
    q: str = Query(default=""),
    lanraragi: LanraragiConnection = Depends(get_lanraragi_connection),
    cache: TagStatsCache = Depends(get_tag_cache),
) -> FacetsResponse:
    facets = build_facets(await cache.get(lanraragi), namespace)
    needle = q.strip().lower()
    if needle:
        facets = [facet for facet in facets if needle in facet.name.lower()]
    return FacetsResponse(namespace=namespace, total=len(facets), data=facets)


@router.get("/tags/suggest", response_model=TagSuggestResponse)
async def suggest_tags(
    q: str = Query(default=""),
    limit: int = Query(default=30, ge=1, le=100),
    lanraragi: LanraragiConnection = Depends(get_lanraragi_connection),
    cache: TagStatsCache = Depends(get_tag_cache),
) -> TagSuggestResponse:
    ranked = rank_tags(build_tag_list(await cache.get(lanraragi)), q)
    return TagSuggestResponse(total=len(ranked), data=ranked[:limit])
