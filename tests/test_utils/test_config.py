"""
Tests para la configuración del servicio.
"""

import pytest
from pydantic import ValidationError

from wa_bot_service.utils.config import Settings


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ("PORT", "BACKEND_URL", "LARAVEL_URL", "CORS_ORIGINS", "WA_VERSION"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SESSIONS_PATH", str(tmp_path / "sessions"))
    return monkeypatch


class TestSettings:
    """Tests para Settings."""

    def test_defaults(self, clean_env):
        # Act
        settings = Settings(_env_file=None)

        # Assert
        assert settings.PORT == 3001
        assert settings.BACKEND_URL == "http://localhost:8000"
        assert settings.WEBHOOK_TIMEOUT == 5.0
        assert settings.RECONNECT_DELAY == 3.0
        assert settings.HEARTBEAT_INTERVAL == 30.0

    def test_laravel_url_alias(self, clean_env):
        # Arrange
        clean_env.setenv("LARAVEL_URL", "https://crm.example.com/")

        # Act
        settings = Settings(_env_file=None)

        # Assert
        assert settings.BACKEND_URL == "https://crm.example.com"

    def test_sessions_path_created(self, clean_env, tmp_path):
        settings = Settings(_env_file=None)

        assert (tmp_path / "sessions").is_dir()
        assert settings.SESSIONS_PATH == str((tmp_path / "sessions").absolute())

    def test_invalid_backend_url(self, clean_env):
        clean_env.setenv("BACKEND_URL", "ftp://backend")

        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_invalid_environment(self, clean_env):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, ENVIRONMENT="qa")

    def test_cors_origins_list(self, clean_env):
        clean_env.setenv("CORS_ORIGINS", "https://a.example.com, https://b.example.com")

        settings = Settings(_env_file=None)

        assert settings.cors_origins == ["https://a.example.com", "https://b.example.com"]

    def test_bridge_config(self, clean_env):
        settings = Settings(_env_file=None, WA_VERSION="2.3000.1", NODE_BINARY="node20")

        config = settings.bridge_config

        assert config["version"] == "2.3000.1"
        assert config["node_binary"] == "node20"
        assert config["bridge_path"] == settings.BRIDGE_PATH
