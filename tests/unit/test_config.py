"""
Unit tests for server configuration.

Tests cover:
- Defaults
- Loading from environment variables
- Access token decoding
- Validation
"""

import base64

import pytest

from tsdb.metricdb_server.config import (
    AccessConfig,
    HttpConfig,
    ObservabilityConfig,
    ServerConfig,
    StorageConfig,
)

ENV_VARS = [
    "METRICDB_DATA_DIR",
    "METRICDB_MAX_FILE_SIZE",
    "METRICDB_CODEC",
    "HTTP_HOST",
    "HTTP_PORT",
    "HTTP_SUB_PATH",
    "METRICDB_ACCESS_TOKENS",
    "METRICDB_ALLOW_ALL",
    "LOG_LEVEL",
    "LOG_FORMAT",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Remove all configuration variables."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestDefaults:
    """Tests for default configuration."""

    def test_defaults(self, clean_env):
        """Unset variables fall back to defaults."""
        config = ServerConfig.from_env()

        assert config.storage == StorageConfig()
        assert config.storage.max_file_size == 10_000_000
        assert config.http == HttpConfig()
        assert config.http.sub_path == "metrics"
        assert config.access.tokens == ()
        assert config.access.allow_all is False
        assert config.observability == ObservabilityConfig()


class TestFromEnv:
    """Tests for loading from environment variables."""

    def test_storage_and_http(self, clean_env, tmp_path):
        """Storage and HTTP settings are read from the environment."""
        clean_env.setenv("METRICDB_DATA_DIR", str(tmp_path))
        clean_env.setenv("METRICDB_MAX_FILE_SIZE", "1024")
        clean_env.setenv("HTTP_PORT", "9000")
        clean_env.setenv("HTTP_SUB_PATH", "api/metrics")

        config = ServerConfig.from_env()

        assert config.storage.data_dir == str(tmp_path)
        assert config.storage.max_file_size == 1024
        assert config.http.port == 9000
        assert config.http.sub_path == "api/metrics"

    def test_access_tokens(self, clean_env):
        """Tokens are comma-separated base64 values."""
        first = base64.b64encode(b"first").decode()
        second = base64.b64encode(b"\x00\x01").decode()
        clean_env.setenv("METRICDB_ACCESS_TOKENS", f"{first}, {second},")

        config = AccessConfig.from_env()

        assert config.tokens == (b"first", b"\x00\x01")

    def test_invalid_token(self, clean_env):
        """Tokens that are not base64 are rejected."""
        clean_env.setenv("METRICDB_ACCESS_TOKENS", "not base64!")

        with pytest.raises(ValueError):
            AccessConfig.from_env()

    def test_allow_all(self, clean_env):
        """METRICDB_ALLOW_ALL enables the development policy."""
        clean_env.setenv("METRICDB_ALLOW_ALL", "TRUE")
        assert AccessConfig.from_env().allow_all is True


class TestValidation:
    """Tests for validate()."""

    def test_invalid_log_format(self, clean_env):
        """Unknown log formats are rejected."""
        clean_env.setenv("LOG_FORMAT", "xml")
        with pytest.raises(ValueError):
            ServerConfig.from_env()

    def test_invalid_file_size(self):
        """The rotation size must be positive."""
        config = ServerConfig(storage=StorageConfig(max_file_size=0))
        with pytest.raises(ValueError):
            config.validate()

    def test_invalid_port(self):
        """Ports must be in range."""
        config = ServerConfig(http=HttpConfig(port=70000))
        with pytest.raises(ValueError):
            config.validate()

    def test_log_config_redacts_tokens(self, caplog):
        """Logged configuration shows the token count only."""
        config = ServerConfig(access=AccessConfig(tokens=(b"top-secret",)))
        with caplog.at_level("INFO"):
            config.log_config()

        record = next(r for r in caplog.records if r.message == "Server configuration loaded")
        assert record.access_tokens == 1
        assert "top-secret" not in repr(record.__dict__)
