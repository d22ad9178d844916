"""Tests for configuration loading and validation."""

import pytest
from pydantic import ValidationError

from automation_engine.config import (
    AppConfig,
    DatabaseType,
    LogLevel,
    get_config,
    get_development_config,
    get_production_config,
    get_testing_config,
    reset_config,
    validate_config,
)
from automation_engine.core.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()


class TestAppConfig:

    def test_defaults(self):
        config = AppConfig()

        assert config.database_url == "sqlite:///./automation_engine.db"
        assert config.database_type == DatabaseType.SQLITE
        assert config.max_steps_per_run == 1000
        assert config.scheduler_enabled is False
        assert config.cron_secret is None

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("AUTOMATION_ENGINE_PORT", "9000")
        monkeypatch.setenv("AUTOMATION_ENGINE_SCHEDULER_ENABLED", "yes")
        monkeypatch.setenv("AUTOMATION_ENGINE_SCHEDULER_INTERVAL_SECONDS", "15")
        monkeypatch.setenv("AUTOMATION_ENGINE_LOG_LEVEL", "debug")
        monkeypatch.setenv("AUTOMATION_ENGINE_CORS_ORIGINS", "https://a.example, https://b.example")
        monkeypatch.setenv("AUTOMATION_ENGINE_DATABASE_URL", "postgresql+psycopg2://user:pw@db/automation")

        config = AppConfig.from_env()

        assert config.port == 9000
        assert config.scheduler_enabled is True
        assert config.scheduler_interval_seconds == 15.0
        assert config.log_level == LogLevel.DEBUG
        assert config.cors_origins == ["https://a.example", "https://b.example"]
        assert config.database_type == DatabaseType.POSTGRESQL

    @pytest.mark.parametrize("overrides", [
        {"database_url": "oracle://db/automation"},
        {"database_url": ""},
        {"port": 70000},
        {"max_steps_per_run": 0},
        {"scheduler_interval_seconds": 0},
    ])
    def test_invalid_values(self, overrides):
        with pytest.raises(ValidationError):
            AppConfig(**overrides)

    def test_redacted_masks_secret(self):
        data = AppConfig(cron_secret="hunter2").redacted()

        assert data["cron_secret"] == "***"
        assert AppConfig().redacted()["cron_secret"] is None

    def test_get_config_is_cached(self, monkeypatch):
        monkeypatch.setenv("AUTOMATION_ENGINE_APP_NAME", "Cached")

        first = get_config()

        assert first is get_config()
        assert first.app_name == "Cached"


class TestValidateConfig:

    def test_creates_sqlite_and_log_directories(self, tmp_path):
        config = AppConfig(
            database_url=f"sqlite:///{tmp_path / 'data' / 'engine.db'}",
            log_file=str(tmp_path / "logs" / "engine.log"),
        )

        validate_config(config)

        assert (tmp_path / "data").is_dir()
        assert (tmp_path / "logs").is_dir()

    def test_stale_timeout_must_exceed_interval(self):
        config = AppConfig(scheduler_interval_seconds=600, stale_claim_timeout_seconds=300)

        with pytest.raises(ConfigurationError, match="Stale claim timeout"):
            validate_config(config)

    @pytest.mark.parametrize("preset", [get_development_config, get_production_config, get_testing_config])
    def test_presets_are_valid(self, preset):
        validate_config(preset())

    def test_preset_differences(self):
        assert get_development_config().scheduler_enabled is True
        assert get_production_config().simulated_capabilities is False
        assert get_production_config().cors_origins == []
        assert get_testing_config().database_url == "sqlite:///:memory:"
