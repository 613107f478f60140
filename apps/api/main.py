"""FastAPI application entrypoint for the LANraragi to XTEink bridge."""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.dependencies import get_batch_manager, get_job_manager, get_lanraragi_connection
from api.routes import archives, convert, device, health, opds, settings
from core.config import Settings, get_settings
from services.converter_engine import ConverterNotFoundError
from services.input_resolution import InputResolutionError
from services.lanraragi_client import LanraragiError
from services.page_fetcher import PageFetchError
from services.xteink_client import DeviceError

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(config: Settings) -> None:
    """Log to stdout, and to ``log_file`` when one is configured."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.log_file is not None:
        config.log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(config.log_file, encoding="utf-8"))

    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
    )
    # Also configure uvicorn's logger to avoid duplicates
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan context manager for startup/shutdown events."""
    logger.info("Starting LANraragi XTC bridge...")
    config = get_settings()
    config.ensure_directories()
    if not config.cbz2xtc_path.exists():
        logger.warning("cbz2xtc not found at %s; conversions will fail until it is installed", config.cbz2xtc_path)

    job_manager = get_job_manager()
    job_manager.start()
    logger.info("API startup complete")
    yield

    logger.info("Initiating graceful shutdown...")
    try:
        await get_batch_manager().shutdown()
    except Exception as e:
        logger.warning("Error during batch shutdown: %s", e)
    try:
        await job_manager.shutdown(timeout=25.0)
    except Exception as e:
        logger.warning("Error during job manager shutdown: %s", e)
    await get_lanraragi_connection().aclose()
    logger.info("Graceful shutdown complete")


async def upstream_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.warning("%s %s: upstream failure: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=502, content={"error": str(exc)})


async def converter_missing_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("%s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"error": str(exc)})


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": str(exc) or "Internal server error"})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    config = get_settings()

    app = FastAPI(
        title=config.app_name,
        version=config.app_version,
        description="Browse LANraragi archives and convert them to XTC for XTEink readers",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins_list,
        allow_origin_regex=r"https?://(localhost|127\.0\.0\.1)(:\d+)?",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )

    app.add_exception_handler(LanraragiError, upstream_error_handler)
    app.add_exception_handler(DeviceError, upstream_error_handler)
    app.add_exception_handler(PageFetchError, upstream_error_handler)
    app.add_exception_handler(InputResolutionError, upstream_error_handler)
    app.add_exception_handler(ConverterNotFoundError, converter_missing_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(health.router, tags=["Health"])
    app.include_router(settings.router, tags=["Settings"])
    app.include_router(device.router, prefix="/device", tags=["Device"])
    app.include_router(archives.router, tags=["Archives"])
    app.include_router(convert.router, prefix="/convert", tags=["Convert"])
    app.include_router(opds.router, prefix="/opds", tags=["OPDS"])

    return app


configure_logging(get_settings())
app = create_app()


if __name__ == "__main__":
    import uvicorn

    config = get_settings()
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
    )
