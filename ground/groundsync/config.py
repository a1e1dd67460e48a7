"""
Configuration management for the Ground sync client.

All configuration is done via environment variables.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep env var names stable; devices may be provisioned with them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class RemoteBackend(Enum):
    """Supported remote data store backends."""

    MEMORY = "memory"
    HTTP = "http"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory for the SQLite database
        db_name: Database file name
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        tiles_dir: Directory for downloaded tile archives (default: <data_dir>/tiles)
    """

    data_dir: str = "./ground-data"
    db_name: str = "ground.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    tiles_dir: str = ""

    @property
    def resolved_tiles_dir(self) -> str:
        return self.tiles_dir or os.path.join(self.data_dir, "tiles")

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("GROUND_DATA_DIR", "./ground-data"),
            db_name=os.getenv("GROUND_DB_NAME", "ground.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            tiles_dir=os.getenv("GROUND_TILES_DIR", ""),
        )


@dataclass(frozen=True)
class RemoteConfig:
    """Remote data store configuration.

    Attributes:
        backend: Which remote backend to use
        base_url: API root for the HTTP backend
        api_token: Bearer token for the HTTP backend (secret)
        timeout_seconds: Per-request timeout
        poll_interval_seconds: Interval between change-stream polls
    """

    backend: RemoteBackend = RemoteBackend.MEMORY
    base_url: str = ""
    api_token: str | None = None
    timeout_seconds: float = 30.0
    poll_interval_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> RemoteConfig:
        """Load configuration from environment variables.

        Raises:
            ValueError: If REMOTE_BACKEND is not a known backend
        """
        backend_str = os.getenv("REMOTE_BACKEND", "memory").lower()
        try:
            backend = RemoteBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid REMOTE_BACKEND '{backend_str}'. Must be one of: memory, http"
            )
        return cls(
            backend=backend,
            base_url=os.getenv("REMOTE_BASE_URL", ""),
            api_token=os.getenv("REMOTE_API_TOKEN"),
            timeout_seconds=float(os.getenv("REMOTE_TIMEOUT_SECONDS", "30")),
            poll_interval_seconds=float(os.getenv("REMOTE_POLL_INTERVAL_SECONDS", "30")),
        )


@dataclass(frozen=True)
class WorkConfig:
    """Background work scheduling configuration.

    Attributes:
        backoff_initial_ms: Delay before the first retry
        backoff_max_ms: Upper bound on any retry delay
        backoff_multiplier: Exponential growth factor
        max_attempts: Attempts per run before giving up
        require_network: Whether work waits for connectivity
    """

    backoff_initial_ms: int = 10_000
    backoff_max_ms: int = 5 * 60 * 60 * 1000
    backoff_multiplier: float = 2.0
    max_attempts: int = 10
    require_network: bool = True

    @classmethod
    def from_env(cls) -> WorkConfig:
        """Load configuration from environment variables."""
        return cls(
            backoff_initial_ms=int(os.getenv("WORK_BACKOFF_INITIAL_MS", "10000")),
            backoff_max_ms=int(os.getenv("WORK_BACKOFF_MAX_MS", str(5 * 60 * 60 * 1000))),
            backoff_multiplier=float(os.getenv("WORK_BACKOFF_MULTIPLIER", "2.0")),
            max_attempts=int(os.getenv("WORK_MAX_ATTEMPTS", "10")),
            require_network=_env_bool("WORK_REQUIRE_NETWORK", "true"),
        )


@dataclass(frozen=True)
class BasemapConfig:
    """Offline basemap configuration.

    Attributes:
        download_timeout_seconds: Per-request timeout for tile archives
        chunk_size: Bytes per streamed download chunk
        geocoder_url: Nominatim-compatible reverse geocoding endpoint (empty disables lookups)
        geocoder_user_agent: User-Agent sent to the geocoder
    """

    download_timeout_seconds: float = 300.0
    chunk_size: int = 64 * 1024
    geocoder_url: str = ""
    geocoder_user_agent: str = "groundsync"

    @classmethod
    def from_env(cls) -> BasemapConfig:
        """Load configuration from environment variables."""
        return cls(
            download_timeout_seconds=float(os.getenv("BASEMAP_DOWNLOAD_TIMEOUT_SECONDS", "300")),
            chunk_size=int(os.getenv("BASEMAP_CHUNK_SIZE", str(64 * 1024))),
            geocoder_url=os.getenv("GEOCODER_URL", ""),
            geocoder_user_agent=os.getenv("GEOCODER_USER_AGENT", "groundsync"),
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
class ClientConfig:
    """Complete client configuration.

    Attributes:
        user_id: Signed-in user, author of local edits
        project_id: Project to pull and follow on start (optional)
        storage: Local storage configuration
        remote: Remote store configuration
        work: Background work configuration
        basemap: Offline basemap configuration
        observability: Logging configuration
    """

    user_id: str = ""
    project_id: str = ""
    storage: StorageConfig = field(default_factory=StorageConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    work: WorkConfig = field(default_factory=WorkConfig)
    basemap: BasemapConfig = field(default_factory=BasemapConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ClientConfig:
        """Load complete configuration from environment variables.

        Returns:
            ClientConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            user_id=os.getenv("GROUND_USER_ID", ""),
            project_id=os.getenv("GROUND_PROJECT_ID", ""),
            storage=StorageConfig.from_env(),
            remote=RemoteConfig.from_env(),
            work=WorkConfig.from_env(),
            basemap=BasemapConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.remote.backend == RemoteBackend.HTTP and not self.remote.base_url:
            raise ValueError("REMOTE_BASE_URL is required when REMOTE_BACKEND=http")
        if self.work.max_attempts < 1:
            raise ValueError("WORK_MAX_ATTEMPTS must be at least 1")
        if self.work.backoff_initial_ms < 0 or self.work.backoff_max_ms < 0:
            raise ValueError("WORK_BACKOFF_INITIAL_MS and WORK_BACKOFF_MAX_MS must be >= 0")
        if self.work.backoff_multiplier < 1.0:
            raise ValueError("WORK_BACKOFF_MULTIPLIER must be >= 1.0")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be one of: json, text")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Client configuration loaded",
            extra={
                "user_id": self.user_id or None,
                "project_id": self.project_id or None,
                "data_dir": self.storage.data_dir,
                "tiles_dir": self.storage.resolved_tiles_dir,
                "remote_backend": self.remote.backend.value,
                "remote_base_url": self.remote.base_url
                if self.remote.backend == RemoteBackend.HTTP
                else None,
                "remote_api_token": "***" if self.remote.api_token else None,
                "work_max_attempts": self.work.max_attempts,
                "work_backoff_initial_ms": self.work.backoff_initial_ms,
                "geocoder_url": self.basemap.geocoder_url or None,
                "log_level": self.observability.log_level,
            },
        )
