"""Runtime-updatable connection settings for LANraragi and the XTEink device."""

import json
import logging
from pathlib import Path

import httpx
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from services.lanraragi_client import LanraragiClient, normalize_lanraragi_base_url
from services.xteink_client import XteinkClient, normalize_device_base_url, normalize_device_path

logger = logging.getLogger(__name__)


class LanraragiSettingsPublic(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    base_url: str
    has_api_key: bool


class DeviceSettings(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    base_url: str
    path: str = "/"


class LanraragiConnection:
    """
    Current LANraragi address and key.

    Each update builds a new client and bumps ``version`` so that caches keyed
    on the version drop stale entries. Replaced clients stay open for jobs that
    still hold them and are closed by :meth:`aclose`.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = normalize_lanraragi_base_url(base_url)
        self._api_key = api_key or ""
        self._transport = transport
        self._client = LanraragiClient(self._base_url, self._api_key, transport=transport)
        self._retired: list[LanraragiClient] = []
        self.version = 0

    @property
    def client(self) -> LanraragiClient:
        return self._client

    def get_settings(self) -> LanraragiSettingsPublic:
        return LanraragiSettingsPublic(base_url=self._base_url, has_api_key=bool(self._api_key.strip()))

    def update(self, base_url: str | None = None, api_key: str | None = None) -> LanraragiSettingsPublic:
        if base_url is not None:
            self._base_url = normalize_lanraragi_base_url(base_url)
        if api_key is not None:
            self._api_key = api_key
        self._retired.append(self._client)
        self._client = LanraragiClient(self._base_url, self._api_key, transport=self._transport)
        self.version += 1
        logger.info("LANraragi settings updated base_url=%s version=%d", self._base_url, self.version)
        return self.get_settings()

    async def aclose(self) -> None:
        for client in [*self._retired, self._client]:
            await client.aclose()
        self._retired.clear()


class DeviceConnection:
    """Device address and upload folder, persisted to a JSON file when one is configured."""

    def __init__(
        self,
        base_url: str,
        path: str = "/",
        settings_file: Path | None = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = DeviceSettings(
            base_url=normalize_device_base_url(base_url),
            path=normalize_device_path(path),
        )
        self.settings_file = settings_file
        self.timeout = timeout
        self.transport = transport
        if settings_file is not None:
            self._load(settings_file)

    def _load(self, settings_file: Path) -> None:
        if not settings_file.exists():
            return
        try:
            persisted = json.loads(settings_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("Ignoring unreadable device settings file %s", settings_file)
            return
        if not isinstance(persisted, dict):
            return

        base_url = self._settings.base_url
        path = self._settings.path
        if persisted.get("baseUrl"):
            try:
                base_url = normalize_device_base_url(str(persisted["baseUrl"]))
            except ValueError:
                logger.warning("Ignoring invalid persisted device URL %r", persisted["baseUrl"])
        if persisted.get("path"):
            path = normalize_device_path(str(persisted["path"]))
        self._settings = DeviceSettings(base_url=base_url, path=path)

    def get_settings(self) -> DeviceSettings:
        return self._settings.model_copy()

    def update(self, base_url: str | None = None, path: str | None = None) -> DeviceSettings:
        next_base = normalize_device_base_url(base_url) if base_url is not None else self._settings.base_url
        next_path = normalize_device_path(path) if path is not None else self._settings.path
        self._settings = DeviceSettings(base_url=next_base, path=next_path)
        if self.settings_file is not None:
            self.settings_file.parent.mkdir(parents=True, exist_ok=True)
            self.settings_file.write_text(
                json.dumps(self._settings.model_dump(by_alias=True), indent=2),
                encoding="utf-8",
            )
        logger.info("Device settings updated base_url=%s path=%s", next_base, next_path)
        return self.get_settings()

    def client(self, base_url: str | None = None) -> XteinkClient:
        """A new client for ``base_url`` (default: the configured device). Caller closes it."""
        return XteinkClient(base_url or self._settings.base_url, timeout=self.timeout, transport=self.transport)
