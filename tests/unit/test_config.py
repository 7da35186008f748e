"""Unit tests for fetchgate.config."""

from __future__ import annotations

import platformdirs
import pytest
from pydantic import ValidationError

from fetchgate.config import (
    _DEFAULT_DATA_DIR,
    _DEFAULT_DB_PATH,
    CacheSettings,
    FetcherSettings,
    Settings,
)


class TestPlatformDefaults:
    def test_default_data_dir_matches_platformdirs(self) -> None:
        assert platformdirs.user_data_dir("fetchgate") == _DEFAULT_DATA_DIR

    def test_default_db_path_under_data_dir(self) -> None:
        assert _DEFAULT_DB_PATH.startswith(_DEFAULT_DATA_DIR)
        assert _DEFAULT_DB_PATH.endswith("cache.db")
        assert CacheSettings().db_path == _DEFAULT_DB_PATH


class TestDefaults:
    def test_section_defaults(self) -> None:
        settings = Settings()
        assert settings.server.transport == "stdio"
        assert settings.cache.document_ttl_hours == 24
        assert settings.cache.search_ttl_seconds == 3600
        assert settings.fetcher.max_redirects == 5
        assert settings.fetcher.allowed_schemes == ["http", "https"]
        assert settings.robots.enabled is True
        assert settings.search.api_key is None


class TestEnvironmentOverrides:
    def test_nested_env_vars(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FETCHGATE__SEARCH__API_KEY", "env-key")
        monkeypatch.setenv("FETCHGATE__FETCHER__MAX_BYTES", "1048576")
        monkeypatch.setenv("FETCHGATE__ROBOTS__ENABLED", "false")

        settings = Settings()

        assert settings.search.api_key == "env-key"
        assert settings.fetcher.max_bytes == 1048576
        assert settings.robots.enabled is False

    def test_init_overrides_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FETCHGATE__SERVER__PORT", "9000")
        assert Settings(server={"port": 7000}).server.port == 7000


class TestValidation:
    def test_search_ttl_must_be_shorter_than_document_ttl(self) -> None:
        with pytest.raises(ValidationError, match="search_ttl_seconds"):
            CacheSettings(document_ttl_hours=1, search_ttl_seconds=3600)

    def test_negative_ttl_zero_allowed(self) -> None:
        assert CacheSettings(negative_ttl_seconds=0).negative_ttl_seconds == 0

    @pytest.mark.parametrize("max_bytes", [0, 50 * 1024 * 1024 + 1])
    def test_max_bytes_bounds(self, max_bytes: int) -> None:
        with pytest.raises(ValidationError):
            FetcherSettings(max_bytes=max_bytes)

    def test_blank_user_agent_rejected(self) -> None:
        with pytest.raises(ValidationError):
            FetcherSettings(user_agent="   ")

    def test_schemes_lowercased(self) -> None:
        assert FetcherSettings(allowed_schemes=["HTTPS"]).allowed_schemes == ["https"]

    def test_empty_schemes_rejected(self) -> None:
        with pytest.raises(ValidationError):
            FetcherSettings(allowed_schemes=[])

    def test_invalid_denied_network_rejected(self) -> None:
        with pytest.raises(ValidationError):
            FetcherSettings(denied_networks=["not-a-cidr"])

    def test_unknown_transport_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(server={"transport": "grpc"})
