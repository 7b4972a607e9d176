"""
Configuration Management
Loads settings from YAML files and environment variables
"""
import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_ENV_PATTERN = re.compile(r"^\$\{([A-Za-z_][A-Za-z0-9_]*)(?::(.*))?\}$")


class Settings(BaseSettings):
    """Application settings loaded from environment"""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    environment: str = "development"
    debug: bool = True

    # API Settings
    api_prefix: str = "/api/v1"
    cors_origins: list[str] = ["http://localhost:3000"]

    # Storage / Queue
    database_url: Optional[str] = None
    redis_url: Optional[str] = None

    # Auth (bearer tokens issued by the identity service)
    jwt_secret: Optional[str] = None
    jwt_algorithm: str = "HS256"

    # Admission overrides (take precedence over YAML)
    system_concurrent_calls_limit: Optional[int] = None
    default_user_concurrent_calls_limit: Optional[int] = None
    queue_processor_interval: Optional[int] = None  # milliseconds


class SchedulerConfig(BaseModel):
    """Admission and dispatch knobs for the call queue."""

    system_concurrent_calls_limit: int = Field(default=10, ge=1)
    default_tenant_concurrent_calls_limit: int = Field(default=2, ge=1, le=100)
    claim_lease_seconds: int = Field(default=300, ge=1)
    claim_batch_size: int = Field(default=50, ge=1)
    lane_policy: Literal["shared", "direct_first"] = "shared"
    default_timezone: str = "UTC"


class WorkerConfig(BaseModel):
    """Dispatch worker loop knobs."""

    poll_interval_seconds: float = Field(default=10.0, gt=0)
    reap_interval_seconds: float = Field(default=60.0, gt=0)
    max_consecutive_errors: int = Field(default=10, ge=1)
    dispatch_channel: str = "dialer:calls:dispatch"


class ConfigManager:
    """Manages loading and merging configuration from multiple sources"""

    def __init__(self, env: str = "development", config_dir: Optional[Path] = None):
        self.env = env
        self.config_dir = config_dir or Path(__file__).parent.parent.parent / "config"
        self._config: Dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration files in order of precedence"""
        default_path = self.config_dir / "default.yaml"
        if default_path.exists():
            self._config = self._load_yaml(default_path)

        env_path = self.config_dir / f"{self.env}.yaml"
        if env_path.exists():
            env_config = self._load_yaml(env_path)
            self._deep_merge(self._config, env_config)

        self._substitute_env_vars(self._config)

    def _load_yaml(self, path: Path) -> Dict:
        """Load YAML file"""
        with open(path, 'r') as f:
            return yaml.safe_load(f) or {}

    def _substitute_env_vars(self, config: Dict) -> None:
        """Replace ${VAR_NAME} or ${VAR_NAME:default} with environment variable values"""
        for key, value in config.items():
            if isinstance(value, dict):
                self._substitute_env_vars(value)
            elif isinstance(value, str):
                match = _ENV_PATTERN.match(value)
                if match:
                    env_var, default = match.group(1), match.group(2)
                    config[key] = os.getenv(env_var, default if default is not None else value)

    def _deep_merge(self, base: Dict, override: Dict) -> None:
        """Recursively merge override into base"""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation
        Example: config.get("scheduler.lane_policy") -> "shared"
        """
        keys = key_path.split('.')
        value = self._config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def get_section(self, section: str) -> Dict:
        """Get a top-level section as a dict (empty when missing)"""
        value = self.get(section, {})
        return dict(value) if isinstance(value, dict) else {}


@lru_cache()
def get_settings() -> Settings:
    return Settings()


@lru_cache()
def get_config_manager() -> ConfigManager:
    return ConfigManager(env=get_settings().environment)


def get_database_url() -> str:
    """Environment first, then YAML, then a local SQLite file."""
    settings = get_settings()
    if settings.database_url:
        return settings.database_url
    return get_config_manager().get("database.url") or "sqlite:///./callqueue.db"


def get_redis_url() -> str:
    settings = get_settings()
    if settings.redis_url:
        return settings.redis_url
    return get_config_manager().get("redis_url") or "redis://localhost:6379"


def build_scheduler_config(
    config: Optional[ConfigManager] = None,
    settings: Optional[Settings] = None,
) -> SchedulerConfig:
    """
    Merge the YAML scheduler section with environment overrides.

    SYSTEM_CONCURRENT_CALLS_LIMIT and DEFAULT_USER_CONCURRENT_CALLS_LIMIT
    win over the YAML values when set.
    """
    config = config or get_config_manager()
    settings = settings or get_settings()

    values = config.get_section("scheduler")
    if settings.system_concurrent_calls_limit is not None:
        values["system_concurrent_calls_limit"] = settings.system_concurrent_calls_limit
    if settings.default_user_concurrent_calls_limit is not None:
        values["default_tenant_concurrent_calls_limit"] = settings.default_user_concurrent_calls_limit

    return SchedulerConfig(**values)


def build_worker_config(
    config: Optional[ConfigManager] = None,
    settings: Optional[Settings] = None,
) -> WorkerConfig:
    config = config or get_config_manager()
    settings = settings or get_settings()

    values = config.get_section("worker")
    if settings.queue_processor_interval is not None:
        values["poll_interval_seconds"] = settings.queue_processor_interval / 1000.0

    return WorkerConfig(**values)


@lru_cache()
def get_scheduler_config() -> SchedulerConfig:
    return build_scheduler_config()
