"""Configuration management for the Automation Engine.

Every setting can be overridden with an ``AUTOMATION_ENGINE_<FIELD>``
environment variable, e.g. ``AUTOMATION_ENGINE_MAX_STEPS_PER_RUN=500``.
List settings take comma separated values.
"""

import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from .core.exceptions import ConfigurationError

ENV_PREFIX = "AUTOMATION_ENGINE_"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseType(str, Enum):
    """Supported database backends, keyed by URL scheme."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"


class AppConfig(BaseModel):
    """Application configuration settings."""

    app_name: str = "Automation Engine"
    app_version: str = "1.0.0"
    debug: bool = False

    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)
    reload: bool = False

    database_url: str = "sqlite:///./automation_engine.db"
    database_echo: bool = Field(default=False, description="Log every SQL statement")

    max_steps_per_run: int = Field(
        default=1000, ge=1,
        description="Nodes one start or resume call may run before the run fails"
    )
    scheduler_enabled: bool = Field(
        default=False,
        description="Run the queue scheduler in a background thread of the API process"
    )
    scheduler_interval_seconds: float = Field(default=60.0, gt=0)
    scheduler_batch_limit: int = Field(default=10, ge=1, description="Queue items claimed per pass")
    stale_claim_timeout_seconds: int = Field(
        default=900, gt=0,
        description="Claims older than this are returned to pending"
    )
    http_timeout_seconds: float = Field(default=30.0, gt=0)
    simulated_capabilities: bool = Field(
        default=True,
        description="Register logging stand-ins for message, email, sms and ai_agent capabilities"
    )
    cron_secret: Optional[str] = Field(
        default=None,
        description="Bearer token required by the queue processing endpoint"
    )

    log_level: LogLevel = LogLevel.INFO
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    log_file: Optional[str] = None
    log_max_size: int = 10 * 1024 * 1024
    log_backup_count: int = 5
    structured_logging: bool = Field(default=False, description="Emit JSON log records")

    slow_request_threshold: float = Field(default=5.0, description="Seconds before a request is logged as slow")

    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    cors_methods: List[str] = Field(default_factory=lambda: ["GET", "POST", "PUT", "DELETE"])

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("Database URL cannot be empty")
        scheme = v.split('://')[0].lower().split('+')[0]
        if scheme not in {t.value for t in DatabaseType}:
            raise ValueError(f"Unsupported database scheme: {scheme}")
        return v

    @field_validator('log_level', mode='before')
    @classmethod
    def normalize_log_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    @field_validator('cors_origins', 'cors_methods', mode='before')
    @classmethod
    def split_csv(cls, v):
        if isinstance(v, str):
            return [part.strip() for part in v.split(',') if part.strip()]
        return v

    @property
    def database_type(self) -> DatabaseType:
        return DatabaseType(self.database_url.split('://')[0].lower().split('+')[0])

    @property
    def is_sqlite(self) -> bool:
        return self.database_type == DatabaseType.SQLITE

    def get_uvicorn_config(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    def redacted(self) -> Dict[str, Any]:
        """Settings as a dict with secrets masked."""
        data = self.model_dump(mode="json")
        if data.get("cron_secret"):
            data["cron_secret"] = "***"
        return data

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Build a configuration from ``AUTOMATION_ENGINE_*`` variables; pydantic coerces the strings."""
        values = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None:
                values[name] = raw
        return cls(**values)


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Process-wide configuration, read from the environment on first use."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load ``config_file`` (or ``./.env``) into the environment, then rebuild the configuration."""
    global _config
    env_file = config_file if config_file and os.path.exists(config_file) else '.env'
    if os.path.exists(env_file):
        load_dotenv(env_file)
    _config = AppConfig.from_env()
    return _config


def reset_config():
    global _config
    _config = None


def _ensure_parent_dir(path: str, label: str, errors: List[str]):
    parent = Path(path).parent
    try:
        parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        errors.append(f"Cannot create {label} directory {parent}: {e}")


def validate_config(config: AppConfig) -> None:
    """Check cross-field constraints and create the directories the config points at.

    Raises:
        ConfigurationError: listing every problem found
    """
    errors: List[str] = []

    if config.is_sqlite and ":memory:" not in config.database_url:
        _ensure_parent_dir(config.database_url.split(":///", 1)[-1], "database", errors)
    if config.log_file:
        _ensure_parent_dir(config.log_file, "log", errors)

    if config.stale_claim_timeout_seconds <= config.scheduler_interval_seconds:
        errors.append("Stale claim timeout must be longer than the scheduler interval")

    if errors:
        raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")


def get_development_config() -> AppConfig:
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        database_echo=True,
        scheduler_enabled=True,
        scheduler_interval_seconds=10.0,
    )


def get_production_config() -> AppConfig:
    return AppConfig(
        log_level=LogLevel.INFO,
        structured_logging=True,
        simulated_capabilities=False,
        cors_origins=[],
    )


def get_testing_config() -> AppConfig:
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        max_steps_per_run=200,
        scheduler_enabled=False,
    )
