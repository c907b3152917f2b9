"""
Host Agent - Configuration

Loads settings from a YAML file, validated with pydantic-settings. Values can
be overridden from the environment, e.g. HOSTAGENT_MQTT__HOST=broker.lan.
"""

from pathlib import Path
from typing import List, Optional

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger(__name__)

DEFAULT_INTERVAL = 10
DEFAULT_MAX_PROCESSES = 50
DEFAULT_SYSTEM_LOG = "logs/system.log"
DEFAULT_EVENT_LOG = "logs/events.log"


class ConfigError(Exception):
    """Configuration file could not be read or is invalid."""


class MQTTSettings(BaseModel):
    host: str = "localhost"
    port: int = Field(default=1883, gt=0, le=65535)
    topic: str = "telemetry/system"
    qos: int = Field(default=1, ge=1, le=2)
    keepalive: int = 60
    connect_timeout: float = 10.0
    publish_timeout: float = 5.0
    disconnect_grace: float = 5.0
    username: Optional[str] = None
    password: Optional[str] = None
    password_file: Optional[str] = None

    def resolve_password(self) -> Optional[str]:
        """Password from password_file when readable, else the inline value."""
        if self.password_file:
            try:
                return Path(self.password_file).read_text().strip()
            except OSError as e:
                logger.warning("MQTT password file unreadable", path=self.password_file, error=str(e))
        return self.password


class TelemetrySettings(BaseModel):
    interval: float = DEFAULT_INTERVAL
    max_processes: int = DEFAULT_MAX_PROCESSES
    cpu_sample_window: float = Field(default=0.1, ge=0)
    include_open_files: bool = True
    critical_files: List[str] = Field(default_factory=list)

    @field_validator("interval", mode="after")
    @classmethod
    def _default_interval(cls, value: float) -> float:
        return value if value > 0 else DEFAULT_INTERVAL

    @field_validator("max_processes", mode="after")
    @classmethod
    def _default_max_processes(cls, value: int) -> int:
        return value if value > 0 else DEFAULT_MAX_PROCESSES


class LoggingSettings(BaseModel):
    level: str = "INFO"
    system_log: str = DEFAULT_SYSTEM_LOG
    event_log: str = DEFAULT_EVENT_LOG

    @field_validator("system_log", mode="after")
    @classmethod
    def _default_system_log(cls, value: str) -> str:
        return value or DEFAULT_SYSTEM_LOG

    @field_validator("event_log", mode="after")
    @classmethod
    def _default_event_log(cls, value: str) -> str:
        return value or DEFAULT_EVENT_LOG

    @field_validator("level", mode="after")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()


class Settings(BaseSettings):
    """Agent settings."""

    model_config = SettingsConfigDict(
        env_prefix="HOSTAGENT_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    mqtt: MQTTSettings = Field(default_factory=MQTTSettings)
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment wins over values read from the YAML file
        return env_settings, init_settings


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Load settings from YAML, falling back to defaults when the file is missing."""
    data = {}
    if config_path:
        path = Path(config_path)
        if not path.exists():
            logger.warning("Config file not found, using defaults", path=config_path)
        else:
            try:
                with open(path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigError(f"Cannot read config {config_path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"Config {config_path} must be a mapping")
            logger.info("Configuration loaded", path=config_path)

    try:
        return Settings(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
