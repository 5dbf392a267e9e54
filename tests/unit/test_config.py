"""Unit tests for sinapicalc configuration management.

Tests AppConfig loading from environment variables and defaults.
"""

from __future__ import annotations

import pytest

from sinapicalc.config import DEFAULT_DOWNLOAD_URL, AppConfig, get_config, reset_config


class TestAppConfig:
    """Test AppConfig creation and defaults."""

    def test_from_env_requires_database_url(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)

        with pytest.raises(KeyError) as exc_info:
            AppConfig.from_env()

        assert "DATABASE_URL" in str(exc_info.value)

    def test_from_env_with_minimal_config(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
        monkeypatch.delenv("DEFAULT_OPERATOR", raising=False)

        config = AppConfig.from_env()

        assert config.db.url == "sqlite+aiosqlite:///./test.db"
        assert config.operator_id == "system"
        assert config.source.download_url == DEFAULT_DOWNLOAD_URL
        assert config.source.max_redirects == 10
        assert config.source.min_archive_bytes == 1000
        assert config.ingestion.resource_batch_size == 300
        assert config.ingestion.price_sub_batch_size == 200
        assert config.ingestion.composition_batch_size == 100
        assert config.ingestion.audit_error_cap == 100
        assert config.ingestion.summary_error_cap == 50
        assert config.ingestion.result_error_cap == 20
        assert config.resolution.max_depth == 5
        assert config.web.stream_timeout_seconds == 600

    def test_from_env_overrides(self, monkeypatch):
        monkeypatch.setenv("SINAPI_DOWNLOAD_URL", "http://mirror/{YYYY}-{MM}.zip")
        monkeypatch.setenv("SINAPI_MAX_REDIRECTS", "3")
        monkeypatch.setenv("INGEST_RESOURCE_BATCH_SIZE", "50")
        monkeypatch.setenv("RESOLUTION_MAX_DEPTH", "8")
        monkeypatch.setenv("WEB_KEEPALIVE_SECONDS", "2.5")
        monkeypatch.setenv("DB_ECHO", "true")

        config = AppConfig.from_env()

        assert config.source.download_url == "http://mirror/{YYYY}-{MM}.zip"
        assert config.source.max_redirects == 3
        assert config.ingestion.resource_batch_size == 50
        assert config.resolution.max_depth == 8
        assert config.web.keepalive_seconds == 2.5
        assert config.db.echo is True

    def test_get_config_is_cached_until_reset(self, monkeypatch):
        first = get_config()
        assert get_config() is first
        assert first.operator_id == "tester"

        monkeypatch.setenv("DEFAULT_OPERATOR", "someone-else")
        assert get_config().operator_id == "tester"

        reset_config()
        assert get_config().operator_id == "someone-else"
