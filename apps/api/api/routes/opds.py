"""OPDS catalog for e-reader clients: navigation feeds and converted downloads."""

import logging
import re
from typing import Literal
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response, StreamingResponse

from api.dependencies import get_lanraragi_connection
from api.routes.archives import SortBy
from api.routes.convert import artifact_response
from core.config import Settings, get_settings
from services.connections import LanraragiConnection
from services.conversion_pipeline import ConversionPipeline
from services.conversion_settings import DEFAULT_CONVERSION_SETTINGS
from services.opds_catalog import (
    FEED_MEDIA_TYPE,
    LETTER_BUCKETS,
    Direction,
    FacetNamespace,
    OpdsCatalog,
    OpdsFeed,
    normalize_bucket,
    query_string,
    title_bucket_order,
)

logger = logging.getLogger(__name__)

router = APIRouter()

LIST_PAGE_SIZE = 30
FACET_PAGE_SIZE = 40
LISTING_PARAMS = ("q", "page", "pageSize", "sortby", "order", "title")

_catalog = OpdsCatalog()


def get_opds_catalog() -> OpdsCatalog:
    return _catalog


def feed_response(feed: OpdsFeed) -> Response:
    return Response(content=feed.to_bytes(), media_type=FEED_MEDIA_TYPE, headers={"Cache-Control": "no-store"})


async def archive_list_feed(
    lanraragi: LanraragiConnection,
    base_url: str,
    feed_path: str,
    q: str,
    title: str,
    page: int,
    page_size: int,
    sortby: str,
    order: str,
    include_home_link: bool = False,
) -> OpdsFeed:
    """One page of search results as an acquisition feed."""
    start = (page - 1) * page_size
    result = await lanraragi.client.search_archives(filter=q, start=start, sortby=sortby, order=order)
    archives = (result.get("data") or [])[:page_size]
    total = int(result.get("recordsFiltered") or 0)
    has_next = start + len(archives) < total
    heading = title.strip() or (f"Results: {q}" if q else "Archives")

    def page_href(number: int) -> str:
        return feed_path + query_string(
            q=q, title=title, page=number, pageSize=page_size, sortby=sortby, order=order
        )

    feed = OpdsFeed(
        base_url,
        page_href(page),
        heading,
        subtitle=f"Total {total} archives. Page {page}. Sorted by {sortby} {order}.",
    )
    if include_home_link:
        feed.add_navigation(f"{feed_path}#home", "Back to OPDS Home", "/opds")
    if page > 1:
        feed.add_navigation(f"{feed_path}#prev-{page - 1}", "Previous Page", page_href(page - 1))
    if has_next:
        feed.add_navigation(f"{feed_path}#next-{page + 1}", "Next Page", page_href(page + 1))
    for record in archives:
        feed.add_archive(record)
    return feed


def navigation_root(base_url: str) -> OpdsFeed:
    feed = OpdsFeed(
        base_url,
        "/opds",
        "LANraragi XTC Catalog",
        subtitle="Browse with navigation-first feeds optimized for XTEink.",
    )
    feed.add_navigation(
        "/opds/nav/recent",
        "Recently Added",
        "/opds/list"
        + query_string(
            title="Recently Added", page=1, pageSize=LIST_PAGE_SIZE, sortby="date_added", order="desc"
        ),
        summary="Newest archives first",
    )
    feed.add_navigation(
        "/opds/nav/title-asc",
        "Titles A-Z",
        "/opds/titles" + query_string(dir="asc", page=1, pageSize=LIST_PAGE_SIZE),
    )
    feed.add_navigation(
        "/opds/nav/title-desc",
        "Titles Z-A",
        "/opds/titles" + query_string(dir="desc", page=1, pageSize=LIST_PAGE_SIZE),
    )
    feed.add_navigation("/opds/nav/artists", "Browse by Artist", "/opds/facets/artist")
    feed.add_navigation("/opds/nav/groups", "Browse by Group", "/opds/facets/group")
    return feed


@router.get("")
@router.get("/", include_in_schema=False)
async def opds_root(
    request: Request,
    q: str = Query(default=""),
    title: str = Query(default=""),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=LIST_PAGE_SIZE, ge=10, le=100, alias="pageSize"),
    sortby: SortBy = Query(default="title"),
    order: Literal["asc", "desc"] = Query(default="asc"),
    lanraragi: LanraragiConnection = Depends(get_lanraragi_connection),
    settings: Settings = Depends(get_settings),
) -> Response:
    """Navigation root; listing parameters turn it into a plain search listing."""
    if any(name in request.query_params for name in LISTING_PARAMS):
        feed = await archive_list_feed(
            lanraragi, settings.server_public_url, "/opds", q, title, page, page_size, sortby, order
        )
        return feed_response(feed)
    return feed_response(navigation_root(settings.server_public_url))


@router.get("/list")
async def opds_list(
    q: str = Query(default=""),
    title: str = Query(default=""),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=LIST_PAGE_SIZE, ge=10, le=100, alias="pageSize"),
    sortby: SortBy = Query(default="title"),
    order: Literal["asc", "desc"] = Query(default="asc"),
    lanraragi: LanraragiConnection = Depends(get_lanraragi_connection),
    settings: Settings = Depends(get_settings),
) -> Response:
    feed = await archive_list_feed(
        lanraragi,
        settings.server_public_url,
        "/opds/list",
        q,
        title,
        page,
        page_size,
        sortby,
        order,
        include_home_link=True,
    )
    return feed_response(feed)


@router.get("/titles")
async def opds_titles(
    direction: Direction = Query(default="asc", alias="dir"),
    letter: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=LIST_PAGE_SIZE, ge=10, le=100, alias="pageSize"),
    lanraragi: LanraragiConnection = Depends(get_lanraragi_connection),
    settings: Settings = Depends(get_settings),
    catalog: OpdsCatalog = Depends(get_opds_catalog),
) -> Response:
    """Titles by letter section; without a section, the list of sections."""
    base_url = settings.server_public_url
    order_label = "Z-A" if direction == "desc" else "A-Z"
    bucket = normalize_bucket(letter)

    if bucket is None:
        feed = OpdsFeed(
            base_url,
            "/opds/titles" + query_string(dir=direction),
            f"Titles {order_label}",
            subtitle="Choose a letter section.",
        )
        feed.add_navigation("/opds/titles#home", "Back to OPDS Home", "/opds")
        for section in title_bucket_order(direction):
            feed.add_navigation(
                f"/opds/titles#{direction}-{section}",
                section,
                "/opds/titles" + query_string(dir=direction, letter=section, page=1, pageSize=page_size),
            )
        return feed_response(feed)

    start = (page - 1) * page_size
    items, done = await catalog.title_bucket(lanraragi, direction, bucket, needed=start + page_size + 1)
    has_next = len(items) > start + page_size or not done

    def page_href(number: int) -> str:
        return "/opds/titles" + query_string(dir=direction, letter=bucket, page=number, pageSize=page_size)

    feed = OpdsFeed(
        base_url,
        page_href(page),
        f"Titles {order_label}: {bucket}",
        subtitle=f"{order_label} order by title. Section {bucket}. Page {page}.",
    )
    feed.add_navigation(
        f"/opds/titles#letters-{direction}",
        f"Back to Titles {order_label}",
        "/opds/titles" + query_string(dir=direction, page=1, pageSize=page_size),
    )
    if page > 1:
        feed.add_navigation(f"/opds/titles#prev-{direction}-{bucket}-{page - 1}", "Previous Page", page_href(page - 1))
    if has_next:
        feed.add_navigation(f"/opds/titles#next-{direction}-{bucket}-{page + 1}", "Next Page", page_href(page + 1))
    for record in items[start : start + page_size]:
        feed.add_archive(record)
    return feed_response(feed)


@router.get("/facets/{namespace}")
async def opds_facets(
    namespace: FacetNamespace,
    letter: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=FACET_PAGE_SIZE, ge=10, le=100, alias="pageSize"),
    lanraragi: LanraragiConnection = Depends(get_lanraragi_connection),
    settings: Settings = Depends(get_settings),
    catalog: OpdsCatalog = Depends(get_opds_catalog),
) -> Response:
    """Artists or groups by letter bucket, each linking to its archive listing."""
    base_url = settings.server_public_url
    heading = "Artists" if namespace == "artist" else "Groups"
    facet_path = f"/opds/facets/{namespace}"
    items = await catalog.facet_items(lanraragi, namespace)
    bucket = normalize_bucket(letter)

    if bucket is None:
        counts = dict.fromkeys(LETTER_BUCKETS, 0)
        for item in items:
            counts[item.bucket] += 1
        feed = OpdsFeed(
            base_url,
            facet_path,
            f"{heading} (A-Z)",
            subtitle=f"Choose a letter bucket. {len(items)} total {heading.lower()}.",
        )
        feed.add_navigation(f"{facet_path}#home", "Back to OPDS Home", "/opds")
        for section, count in counts.items():
            if count == 0:
                continue
            feed.add_navigation(
                f"{facet_path}#{section}",
                f"{section} ({count})",
                facet_path + query_string(letter=section, page=1, pageSize=FACET_PAGE_SIZE),
            )
        return feed_response(feed)

    in_bucket = [item for item in items if item.bucket == bucket]
    start = (page - 1) * page_size
    page_items = in_bucket[start : start + page_size]
    has_next = start + len(page_items) < len(in_bucket)

    def page_href(number: int) -> str:
        return facet_path + query_string(letter=bucket, page=number, pageSize=page_size)

    feed = OpdsFeed(
        base_url,
        page_href(page),
        f"{heading}: {bucket}",
        subtitle=f"{len(in_bucket)} {heading.lower()} in bucket {bucket}. Page {page}.",
    )
    feed.add_navigation(f"{facet_path}#letters", f"Back to {heading} A-Z", facet_path)
    if page > 1:
        feed.add_navigation(f"{facet_path}#prev-{bucket}-{page - 1}", "Previous Page", page_href(page - 1))
    if has_next:
        feed.add_navigation(f"{facet_path}#next-{bucket}-{page + 1}", "Next Page", page_href(page + 1))
    for item in page_items:
        feed.add_navigation(
            f"{facet_path}/{quote(item.name, safe='')}",
            f"{item.name} ({item.count})",
            "/opds/list"
            + query_string(
                q=f"{namespace}:{item.name}",
                title=f"{heading[:-1]}: {item.name}",
                page=1,
                pageSize=LIST_PAGE_SIZE,
                sortby="title",
                order="asc",
            ),
        )
    return feed_response(feed)


@router.get("/download/{archive_id}")
async def opds_download(
    archive_id: str,
    lanraragi: LanraragiConnection = Depends(get_lanraragi_connection),
    settings: Settings = Depends(get_settings),
) -> StreamingResponse:
    """Convert with the default settings and stream the XTC file; a ``.xtc`` suffix is ignored."""
    archive_id = re.sub(r"\.xtc$", "", archive_id.strip(), flags=re.IGNORECASE)
    if not archive_id:
        raise HTTPException(status_code=400, detail="Missing archive id")
    logger.info("OPDS download id=%s", archive_id)
    pipeline = ConversionPipeline(lanraragi.client, settings)
    artifact = await pipeline.convert(archive_id, DEFAULT_CONVERSION_SETTINGS)
    return artifact_response(artifact)
