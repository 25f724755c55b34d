"""
Configuration management for the MetricDB server.

All configuration is done via environment variables. This module provides
typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Access tokens are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that keep existing deployments working
    - Every new setting needs a from_env() entry and a test
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Root folder of the metric storage
        max_file_size: Size in bytes at which a metric starts a new log file
        codec: Name of the codec for log records and wire payloads
    """

    data_dir: str = "/var/lib/metricdb"
    max_file_size: int = 10_000_000
    codec: str = "json"

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("METRICDB_DATA_DIR", "/var/lib/metricdb"),
            max_file_size=int(os.getenv("METRICDB_MAX_FILE_SIZE", "10000000")),
            codec=os.getenv("METRICDB_CODEC", "json"),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP server configuration.

    Attributes:
        host: Host to bind to
        port: Port to listen on
        sub_path: Route prefix of the metric endpoints
    """

    host: str = "0.0.0.0"
    port: int = 8080
    sub_path: str = "metrics"

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
            sub_path=os.getenv("HTTP_SUB_PATH", "metrics"),
        )


@dataclass(frozen=True)
class AccessConfig:
    """Access control configuration.

    Attributes:
        tokens: Accepted access tokens (raw bytes)
        allow_all: Disable access control (development only)
    """

    tokens: tuple[bytes, ...] = ()
    allow_all: bool = False

    @classmethod
    def from_env(cls) -> AccessConfig:
        """Load configuration from environment variables.

        METRICDB_ACCESS_TOKENS is a comma-separated list of base64 tokens.

        Raises:
            ValueError: If a token is not valid base64
        """
        raw = os.getenv("METRICDB_ACCESS_TOKENS", "")
        tokens = []
        for index, token in enumerate(t.strip() for t in raw.split(",")):
            if not token:
                continue
            try:
                tokens.append(base64.b64decode(token, validate=True))
            except binascii.Error:
                raise ValueError(f"METRICDB_ACCESS_TOKENS entry {index} is not valid base64")
        return cls(
            tokens=tuple(tokens),
            allow_all=os.getenv("METRICDB_ALLOW_ALL", "false").lower() == "true",
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        storage: Local storage configuration
        http: HTTP server configuration
        access: Access control configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    access: AccessConfig = field(default_factory=AccessConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            http=HttpConfig.from_env(),
            access=AccessConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.storage.max_file_size <= 0:
            raise ValueError("METRICDB_MAX_FILE_SIZE must be positive")
        if not 0 < self.http.port < 65536:
            raise ValueError(f"Invalid HTTP_PORT: {self.http.port}")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )
        if not self.access.tokens and not self.access.allow_all:
            logger.warning(
                "No access tokens configured; all remote requests will be denied"
            )

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on startup."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "max_file_size": self.storage.max_file_size,
                "codec": self.storage.codec,
                "http_bind": f"{self.http.host}:{self.http.port}",
                "http_sub_path": self.http.sub_path,
                "access_tokens": len(self.access.tokens),
                "allow_all": self.access.allow_all,
                "log_level": self.observability.log_level,
            },
        )
