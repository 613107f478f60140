"""Request and response bodies for the HTTP API (camelCase on the wire)."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from services.batch_scheduler import BatchState
from services.connections import DeviceSettings, LanraragiSettingsPublic
from services.conversion_settings import ConversionSettings
from services.job_state import ConversionJob
from services.xteink_client import DeviceFileEntry


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConvertRequest(CamelModel):
    """Missing settings fields take their defaults."""

    settings: ConversionSettings = Field(default_factory=ConversionSettings)


class JobResponse(CamelModel):
    job: ConversionJob


class DefaultsResponse(CamelModel):
    settings: ConversionSettings


class LanraragiSettingsUpdate(CamelModel):
    base_url: str | None = None
    api_key: str | None = None


class LanraragiSettingsResponse(CamelModel):
    ok: bool = True
    settings: LanraragiSettingsPublic


class DeviceSettingsUpdate(CamelModel):
    base_url: str | None = None
    path: str | None = None


class DeviceSettingsResponse(CamelModel):
    ok: bool = True
    settings: DeviceSettings


class DeviceTargetRequest(CamelModel):
    base_url: str | None = None
    path: str | None = None


class MkdirRequest(DeviceTargetRequest):
    name: str = Field(min_length=1, max_length=120)


class MkdirResponse(CamelModel):
    ok: bool = True
    base_url: str
    path: str
    name: str


class DeviceFilesResponse(CamelModel):
    base_url: str
    path: str
    files: list[DeviceFileEntry]


class UploadResponse(CamelModel):
    ok: bool = True
    base_url: str
    path: str
    file_name: str
    file_size: int


class HealthResponse(CamelModel):
    ok: bool
    lanraragi: dict[str, Any] | None = None
    converter: Literal["available", "missing"]
    error: str | None = None


class FacetEntry(CamelModel):
    name: str
    count: int


class FacetsResponse(CamelModel):
    namespace: Literal["artist", "group"]
    total: int
    data: list[FacetEntry]


class TagSuggestResponse(CamelModel):
    total: int
    data: list[str]


class BatchRequest(CamelModel):
    archive_ids: list[str] = Field(min_length=1)
    mode: Literal["download", "upload"] = "download"
    workers: int | None = Field(default=None, ge=1, le=8)
    settings: ConversionSettings = Field(default_factory=ConversionSettings)
    base_url: str | None = None
    path: str | None = None


class BatchResponse(CamelModel):
    batch: BatchState
