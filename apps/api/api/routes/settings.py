"""Conversion defaults and runtime LANraragi/device settings."""

from fastapi import APIRouter, Depends, HTTPException

from api.dependencies import get_device_connection, get_lanraragi_connection
from api.schemas import (
    DefaultsResponse,
    DeviceSettingsResponse,
    DeviceSettingsUpdate,
    LanraragiSettingsResponse,
    LanraragiSettingsUpdate,
)
from services.connections import DeviceConnection, LanraragiConnection
from services.conversion_settings import DEFAULT_CONVERSION_SETTINGS

router = APIRouter()


@router.get("/settings/defaults", response_model=DefaultsResponse)
async def get_default_settings() -> DefaultsResponse:
    return DefaultsResponse(settings=DEFAULT_CONVERSION_SETTINGS)


@router.get("/lanraragi/settings", response_model=LanraragiSettingsResponse)
async def get_lanraragi_settings(
    lanraragi: LanraragiConnection = Depends(get_lanraragi_connection),
) -> LanraragiSettingsResponse:
    return LanraragiSettingsResponse(settings=lanraragi.get_settings())


@router.post("/lanraragi/settings", response_model=LanraragiSettingsResponse)
async def update_lanraragi_settings(
    request: LanraragiSettingsUpdate,
    lanraragi: LanraragiConnection = Depends(get_lanraragi_connection),
) -> LanraragiSettingsResponse:
    """Switch LANraragi server or key; cached listings are dropped."""
    if request.base_url is None and request.api_key is None:
        raise HTTPException(status_code=400, detail="No LANraragi settings provided.")
    try:
        settings = lanraragi.update(base_url=request.base_url, api_key=request.api_key)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return LanraragiSettingsResponse(settings=settings)


@router.get("/device/settings", response_model=DeviceSettingsResponse)
async def get_device_settings(
    device: DeviceConnection = Depends(get_device_connection),
) -> DeviceSettingsResponse:
    return DeviceSettingsResponse(settings=device.get_settings())


@router.post("/device/settings", response_model=DeviceSettingsResponse)
async def update_device_settings(
    request: DeviceSettingsUpdate,
    device: DeviceConnection = Depends(get_device_connection),
) -> DeviceSettingsResponse:
    if request.base_url is None and request.path is None:
        raise HTTPException(status_code=400, detail="No device settings provided.")
    try:
        settings = device.update(base_url=request.base_url, path=request.path)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return DeviceSettingsResponse(settings=settings)
