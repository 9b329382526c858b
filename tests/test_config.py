"""
Tests for settings loading.
"""

import logging
import pytest
from unittest.mock import patch

from railway_orchestrator.config import Settings, configure_logging, get_settings


@pytest.mark.unit
class TestSettings:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("DEPLOYMENT_RETRY_MIN_WAIT", raising=False)
        settings = Settings(_env_file=None)

        assert settings.deployment_events_channel == "deployment:events"
        assert settings.railway_sandbox_home == "/tmp/railway-sandbox"
        assert settings.railway_cli_path_env == "/usr/local/bin:/usr/bin:/bin"
        assert settings.railway_deploy_timeout_ms == 600_000
        assert settings.railway_command_timeout_ms == 120_000
        assert settings.railway_kill_grace_ms == 5_000
        assert settings.deployment_max_attempts == 3
        assert settings.deployment_retry_min_wait == 1.0

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("RAILWAY_CLI_PATH", "/opt/railway/bin/railway")
        monkeypatch.setenv("deployment_max_attempts", "5")

        settings = Settings(_env_file=None)

        assert settings.railway_cli_path == "/opt/railway/bin/railway"
        assert settings.deployment_max_attempts == 5

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        assert get_settings() is get_settings()

    def test_configure_logging_uses_log_level(self):
        settings = Settings(_env_file=None, log_level="debug")

        with patch("railway_orchestrator.config.logging.basicConfig") as basic_config:
            configure_logging(settings)

        assert basic_config.call_args.kwargs["level"] == logging.DEBUG

    def test_configure_logging_unknown_level_falls_back_to_info(self):
        settings = Settings(_env_file=None, log_level="chatty")

        with patch("railway_orchestrator.config.logging.basicConfig") as basic_config:
            configure_logging(settings)

        assert basic_config.call_args.kwargs["level"] == logging.INFO
