"""Health check endpoint."""

import logging
from typing import Literal

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from api.dependencies import get_lanraragi_connection
from api.schemas import HealthResponse
from core.config import Settings, get_settings
from services.connections import LanraragiConnection
from services.lanraragi_client import LanraragiError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(
    settings: Settings = Depends(get_settings),
    lanraragi: LanraragiConnection = Depends(get_lanraragi_connection),
) -> HealthResponse | JSONResponse:
    """Ping LANraragi and check that cbz2xtc is in place."""
    converter: Literal["available", "missing"] = "available" if settings.cbz2xtc_path.exists() else "missing"

    try:
        info = await lanraragi.client.ping()
    except (LanraragiError, OSError, ValueError) as e:
        logger.warning("Health check: LANraragi unreachable: %s", e)
        body = HealthResponse(ok=False, converter=converter, error=str(e) or e.__class__.__name__)
        return JSONResponse(status_code=500, content=body.model_dump(by_alias=True))

    return HealthResponse(ok=True, lanraragi=info, converter=converter)
