"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Environment variables  (FETCHGATE__FETCHER__MAX_BYTES=1048576)
  2. fetchgate.yaml         (searched in cwd, then platform config dir)
  3. Hardcoded defaults

The config file is optional; every field has a usable default. The search
provider key is the only setting needed for ``web_search``.
"""

from __future__ import annotations

import ipaddress
from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

_DEFAULT_DATA_DIR = platformdirs.user_data_dir("fetchgate")
_DEFAULT_DB_PATH = str(Path(_DEFAULT_DATA_DIR) / "cache.db")

MAX_BYTES_LIMIT = 50 * 1024 * 1024


def _find_config_file() -> str | None:
    """Return the path of the first fetchgate.yaml found, or None."""
    candidates = [
        Path("fetchgate.yaml"),
        Path(platformdirs.user_config_dir("fetchgate")) / "fetchgate.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class ServerSettings(BaseModel):
    transport: Literal["stdio", "http"] = "stdio"
    host: str = "127.0.0.1"
    port: int = 8080
    auth_enabled: bool = True
    auth_key: str | None = None


class CacheSettings(BaseModel):
    db_path: str = _DEFAULT_DB_PATH
    document_ttl_hours: int = Field(default=24, ge=1)
    search_ttl_seconds: int = Field(default=3600, ge=1)
    # 0 disables negative caching of HTTP error responses
    negative_ttl_seconds: int = Field(default=300, ge=0)
    cleanup_interval_hours: int = Field(default=6, ge=1)
    retention_days: int = Field(default=7, ge=0)

    @model_validator(mode="after")
    def _search_expires_before_documents(self) -> CacheSettings:
        if self.search_ttl_seconds >= self.document_ttl_hours * 3600:
            raise ValueError("search_ttl_seconds must be shorter than document_ttl_hours")
        return self


class FetcherSettings(BaseModel):
    user_agent: str = "fetchgate/0.1"
    timeout_seconds: float = Field(default=20.0, ge=0.1, le=300.0)
    max_bytes: int = Field(default=5 * 1024 * 1024, gt=0, le=MAX_BYTES_LIMIT)
    max_redirects: int = Field(default=5, ge=0, le=10)
    allowed_schemes: list[str] = ["http", "https"]
    # Extra networks refused in addition to loopback/private/link-local/etc.
    denied_networks: list[str] = ["100.64.0.0/10"]

    @field_validator("user_agent")
    @classmethod
    def _user_agent_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("user_agent must not be empty")
        return value

    @field_validator("allowed_schemes")
    @classmethod
    def _lowercase_schemes(cls, value: list[str]) -> list[str]:
        schemes = [scheme.strip().lower() for scheme in value if scheme.strip()]
        if not schemes:
            raise ValueError("allowed_schemes must contain at least one scheme")
        return schemes

    @field_validator("denied_networks")
    @classmethod
    def _parse_networks(cls, value: list[str]) -> list[str]:
        for cidr in value:
            ipaddress.ip_network(cidr, strict=False)
        return value


class RobotsSettings(BaseModel):
    enabled: bool = True
    ttl_hours: int = Field(default=24, ge=1)
    timeout_seconds: float = Field(default=10.0, gt=0)


class RateLimitSettings(BaseModel):
    capacity: int = Field(default=5, ge=1)
    refill_per_second: float = Field(default=1.0, gt=0)
    # Longest a request will sleep for a token before failing with RATE_LIMITED
    max_wait_seconds: float = Field(default=5.0, ge=0)


class SearchSettings(BaseModel):
    api_key: str | None = None
    base_url: str = "https://api.search.brave.com/res/v1"
    timeout_seconds: float = Field(default=10.0, gt=0)


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: FETCHGATE__SEARCH__API_KEY=...
        env_prefix="FETCHGATE__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    server: ServerSettings = ServerSettings()
    cache: CacheSettings = CacheSettings()
    fetcher: FetcherSettings = FetcherSettings()
    robots: RobotsSettings = RobotsSettings()
    rate_limit: RateLimitSettings = RateLimitSettings()
    search: SearchSettings = SearchSettings()
    logging: LoggingSettings = LoggingSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            YamlConfigSettingsSource(settings_cls),
        )
