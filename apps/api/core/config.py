"""Application configuration using Pydantic Settings."""

from functools import lru_cache
import json
from pathlib import Path
from typing import Literal

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "LANraragi XTC Bridge"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: Literal["development", "staging", "production"] = "development"

    # Server
    host: str = "0.0.0.0"
    port: int = 3000
    server_public_url: str = Field(
        default="http://localhost:3000",
        description="Base URL advertised to clients",
    )

    # LANraragi
    lanraragi_base_url: str = Field(
        default="http://localhost:3000",
        description="LANraragi server base URL",
    )
    lanraragi_api_key: str = Field(default="", description="LANraragi API key (optional)")
    use_lrr_page_extraction: bool = Field(
        default=True,
        description="Build the conversion archive from LANraragi's extracted page cache",
    )

    # XTEink device
    xteink_base_url: str = Field(default="http://xteink.local", description="Default device URL")
    device_settings_file: Path = Field(
        default=Path("data/device-settings.json"),
        description="Where runtime device settings are persisted",
    )
    device_request_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Timeout for device requests (large uploads)",
    )

    # Conversion tool
    cbz2xtc_path: Path = Field(
        default=Path("/opt/cbz2xtc/cbz2xtc.py"),
        description="cbz2xtc conversion script",
    )
    png2xtc_path: Path | None = Field(
        default=None,
        description="Optional png2xtc helper, exported to cbz2xtc as PNG2XTC_PATH",
    )
    python_bin: str = Field(default="python3", description="Interpreter used to run cbz2xtc")
    temp_root: Path = Field(default=Path(".tmp"), description="Parent directory of job workspaces")

    # Page fetching
    page_fetch_concurrency: int = Field(default=6, ge=1, le=16, description="Concurrent page downloads")
    page_fetch_retry_attempts: int = Field(default=3, ge=1, description="Attempts per page")
    page_fetch_retry_delay_ms: int = Field(default=300, ge=0, description="Linear backoff unit")

    # Frame preview
    frame_poll_interval_ms: int = Field(default=500, ge=50, description="Frame watcher poll interval")
    frame_min_age_ms: int = Field(default=350, ge=0, description="Minimum frame age before reading")

    # Jobs
    job_ttl_seconds: float = Field(
        default=15 * 60,
        gt=0,
        description="How long unclaimed job results are kept",
    )
    batch_max_parallel: int = Field(default=4, ge=1, le=8, description="Default batch worker count")

    # Logging
    log_file: Path | None = Field(default=Path("logs/bridge.log"), description="Optional log file")

    # CORS
    # NOTE: Keep this as a string so pydantic-settings doesn't attempt JSON parsing
    # before our validators run (which breaks on comma-separated values).
    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        description='Allowed CORS origins (comma-separated or JSON array, e.g. \'["https://a","https://b"]\')',
    )

    @computed_field
    @property
    def cors_origins_list(self) -> list[str]:
        raw = (self.cors_origins or "").strip()
        if raw == "":
            return []
        if raw.startswith("["):
            try:
                parsed = json.loads(raw)
                if isinstance(parsed, list):
                    return [str(it).strip() for it in parsed if str(it).strip()]
            except json.JSONDecodeError:
                pass
        return [origin.strip() for origin in raw.split(",") if origin.strip()]

    @computed_field
    @property
    def temp_root_absolute(self) -> Path:
        """Workspace root resolved against the current working directory."""
        return self.temp_root if self.temp_root.is_absolute() else self.temp_root.resolve()

    def ensure_directories(self) -> None:
        """Create required directories if they don't exist."""
        directories = [self.temp_root_absolute, self.device_settings_file.parent]
        if self.log_file is not None:
            directories.append(self.log_file.parent)
        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
