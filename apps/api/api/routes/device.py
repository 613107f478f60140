"""XTEink device browsing endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Query

from api.dependencies import get_device_connection, resolve_device_target
from api.schemas import DeviceFilesResponse, MkdirRequest, MkdirResponse
from services.connections import DeviceConnection, DeviceSettings

router = APIRouter()


def _target(device: DeviceConnection, base_url: str | None, path: str | None) -> tuple[str, str]:
    try:
        return resolve_device_target(device, base_url, path)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


@router.get("/defaults", response_model=DeviceSettings)
async def get_device_defaults(
    device: DeviceConnection = Depends(get_device_connection),
) -> DeviceSettings:
    return device.get_settings()


@router.get("/files", response_model=DeviceFilesResponse)
async def list_device_files(
    base_url: str | None = Query(default=None, alias="baseUrl"),
    path: str | None = Query(default=None),
    device: DeviceConnection = Depends(get_device_connection),
) -> DeviceFilesResponse:
    resolved_url, resolved_path = _target(device, base_url, path)
    async with device.client(resolved_url) as client:
        files = await client.list_files(resolved_path)
    return DeviceFilesResponse(base_url=resolved_url, path=resolved_path, files=files)


@router.post("/mkdir", response_model=MkdirResponse)
async def create_device_folder(
    request: MkdirRequest,
    device: DeviceConnection = Depends(get_device_connection),
) -> MkdirResponse:
    resolved_url, resolved_path = _target(device, request.base_url, request.path)
    name = request.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Folder name is required.")
    async with device.client(resolved_url) as client:
        await client.create_folder(resolved_path, name)
    return MkdirResponse(base_url=resolved_url, path=resolved_path, name=name)
