"""
Unit tests for environment-based configuration.
"""

import logging

import pytest

from ground.groundsync.config import (
    ClientConfig,
    RemoteBackend,
    RemoteConfig,
    StorageConfig,
    WorkConfig,
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "GROUND_DATA_DIR",
        "GROUND_TILES_DIR",
        "GROUND_USER_ID",
        "GROUND_PROJECT_ID",
        "REMOTE_BACKEND",
        "REMOTE_BASE_URL",
        "REMOTE_API_TOKEN",
        "WORK_MAX_ATTEMPTS",
        "WORK_BACKOFF_INITIAL_MS",
        "WORK_BACKOFF_MULTIPLIER",
        "SQLITE_WAL_MODE",
        "LOG_FORMAT",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestClientConfig:
    """Tests for ClientConfig."""

    def test_defaults(self, clean_env, tmp_path):
        clean_env.setenv("GROUND_DATA_DIR", str(tmp_path))

        config = ClientConfig.from_env()

        assert config.remote.backend == RemoteBackend.MEMORY
        assert config.work.backoff_initial_ms == 10_000
        assert config.work.backoff_max_ms == 5 * 60 * 60 * 1000
        assert config.work.max_attempts == 10
        assert config.storage.wal_mode is True
        assert config.storage.resolved_tiles_dir == str(tmp_path / "tiles")

    def test_env_overrides(self, clean_env, tmp_path):
        clean_env.setenv("GROUND_DATA_DIR", str(tmp_path))
        clean_env.setenv("GROUND_USER_ID", "user_1")
        clean_env.setenv("REMOTE_BACKEND", "HTTP")
        clean_env.setenv("REMOTE_BASE_URL", "https://ground.example.org/api")
        clean_env.setenv("WORK_MAX_ATTEMPTS", "3")
        clean_env.setenv("SQLITE_WAL_MODE", "false")
        clean_env.setenv("GROUND_TILES_DIR", "/srv/tiles")

        config = ClientConfig.from_env()

        assert config.user_id == "user_1"
        assert config.remote.backend == RemoteBackend.HTTP
        assert config.work.max_attempts == 3
        assert config.storage.wal_mode is False
        assert config.storage.resolved_tiles_dir == "/srv/tiles"

    def test_invalid_backend(self, clean_env):
        clean_env.setenv("REMOTE_BACKEND", "carrier-pigeon")

        with pytest.raises(ValueError):
            ClientConfig.from_env()

    def test_http_requires_base_url(self, clean_env):
        clean_env.setenv("REMOTE_BACKEND", "http")

        with pytest.raises(ValueError):
            ClientConfig.from_env()

    @pytest.mark.parametrize(
        "work",
        [
            WorkConfig(max_attempts=0),
            WorkConfig(backoff_initial_ms=-1),
            WorkConfig(backoff_multiplier=0.5),
        ],
    )
    def test_invalid_work_settings(self, work, tmp_path):
        config = ClientConfig(storage=StorageConfig(data_dir=str(tmp_path)), work=work)

        with pytest.raises(ValueError):
            config.validate()

    def test_log_config_redacts_token(self, tmp_path, caplog):
        config = ClientConfig(
            storage=StorageConfig(data_dir=str(tmp_path)),
            remote=RemoteConfig(
                backend=RemoteBackend.HTTP,
                base_url="https://ground.example.org/api",
                api_token="super-secret",
            ),
        )

        with caplog.at_level(logging.INFO, logger="ground.groundsync.config"):
            config.log_config()

        [record] = caplog.records
        assert record.remote_api_token == "***"
        assert "super-secret" not in repr(record.__dict__)
