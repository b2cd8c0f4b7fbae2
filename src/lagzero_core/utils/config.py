"""
Configuration loader for LagZero Core.

This module provides configuration management with:
- Multiple configuration sources (JSON, YAML, TOML files and dicts)
- LAGZERO_* environment variable overrides
- Schema validation via pydantic
- Type coercion
- Priority-ordered merging
"""

import os
import json
import yaml
import toml
from pathlib import Path
from typing import Optional, Dict, Any, List, Union
from pydantic import BaseModel, Field, field_validator, model_validator, ValidationError, ConfigDict
import asyncio

from .logging import get_logger
from .errors import ConfigurationError


logger = get_logger("lagzero.config")

DEFAULT_RELEASE_FEED = "https://api.github.com/repos/SagerNet/sing-box/releases/latest"
ENV_PREFIX = "LAGZERO_"


def _default_data_dir() -> Path:
    return Path.home() / ".lagzero"


class ConfigSource(BaseModel):
    """Configuration source definition."""
    path: Optional[Path] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    source_type: str = "dict"

    model_config = ConfigDict(arbitrary_types_allowed=True)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    format: str = "json"
    directory: Optional[Path] = None
    max_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 10
    enable_console: bool = True
    enable_sentry: bool = False
    sentry_dsn: Optional[str] = None

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator('format')
    @classmethod
    def validate_format(cls, v):
        if v not in ("json", "console"):
            raise ValueError(f"Invalid log format: {v}")
        return v


class InstallerConfig(BaseModel):
    """Core binary installer configuration."""
    bin_dir: Optional[Path] = None
    release_feed_url: str = DEFAULT_RELEASE_FEED
    user_agent: str = "LagZero"
    max_redirects: int = Field(default=5, ge=0)
    network_retries: int = Field(default=3, ge=1)
    retry_step: float = Field(default=1.0, ge=0)
    request_timeout: float = Field(default=60.0, gt=0)
    progress_step_percent: int = Field(default=20, ge=1, le=100)


class SupervisorConfig(BaseModel):
    """Core process supervisor configuration."""
    startup_window: float = Field(default=0.8, ge=0)
    max_retries: int = Field(default=3, ge=0)
    retry_backoff: float = Field(default=2.0, ge=0)
    kill_grace: float = Field(default=0.8, ge=0)
    stop_timeout: float = Field(default=5.0, gt=0)
    log_buffer_lines: int = Field(default=80, ge=1)
    validate_before_start: bool = True


class MonitorConfig(BaseModel):
    """Process-tree monitor configuration."""
    poll_interval: float = Field(default=3.0, gt=0)


class RulesConfig(BaseModel):
    """Process-name rule coordinator configuration."""
    remote_dns_tag: str = "remote-primary"
    proxy_outbound: str = "proxy"


class LagZeroSettings(BaseModel):
    """Main LagZero Core settings."""
    app_name: str = "lagzero"
    debug: bool = False

    data_dir: Path = Field(default_factory=_default_data_dir)
    core_config_path: Optional[Path] = None

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    installer: InstallerConfig = Field(default_factory=InstallerConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    rules: RulesConfig = Field(default_factory=RulesConfig)

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        validate_assignment=True
    )

    @field_validator('data_dir', 'core_config_path', mode='before')
    @classmethod
    def expand_path(cls, v):
        """Expand ~ in configured paths."""
        if v is None:
            return v
        return Path(v).expanduser()

    @model_validator(mode='after')
    def fill_derived_paths(self):
        """Derive unset paths from the data directory."""
        if self.core_config_path is None:
            object.__setattr__(self, 'core_config_path', self.data_dir / "config.json")
        if self.installer.bin_dir is None:
            self.installer.bin_dir = self.data_dir / "bin"
        if self.logging.directory is None:
            self.logging.directory = self.data_dir / "logs"
        return self


class ConfigLoader:
    """Configuration loader with multiple source support."""

    def __init__(self, env_prefix: str = ENV_PREFIX):
        self._sources: List[ConfigSource] = []
        self._settings: Optional[LagZeroSettings] = None
        self._env_prefix = env_prefix
        self._lock = asyncio.Lock()

    def add_source(
        self,
        source: Union[str, Path, Dict[str, Any]],
        priority: int = 0,
        source_type: Optional[str] = None
    ) -> None:
        """
        Add configuration source.

        Args:
            source: Configuration source (file path or dict)
            priority: Source priority (higher wins)
            source_type: Source type (auto-detected if None)
        """
        if isinstance(source, (str, Path)):
            path = Path(source).expanduser()
            if not source_type:
                source_type = self._detect_source_type(path)

            self._sources.append(ConfigSource(
                path=path,
                priority=priority,
                source_type=source_type
            ))
        else:
            self._sources.append(ConfigSource(
                data=source,
                priority=priority,
                source_type="dict"
            ))

        # Merge order: lowest priority first so higher priorities override
        self._sources.sort(key=lambda s: s.priority)

    def _detect_source_type(self, path: Path) -> str:
        """Detect configuration file type."""
        suffix = path.suffix.lower()
        if suffix == ".json":
            return "json"
        elif suffix in (".yaml", ".yml"):
            return "yaml"
        elif suffix == ".toml":
            return "toml"
        else:
            raise ConfigurationError(f"Unknown config file type: {suffix}")

    async def load(self) -> LagZeroSettings:
        """
        Load settings from all sources.

        Returns:
            Merged and validated settings
        """
        async with self._lock:
            merged_data: Dict[str, Any] = {}

            for source in self._sources:
                try:
                    data = await self._load_source(source)
                except (OSError, ValueError, yaml.YAMLError, toml.TomlDecodeError) as e:
                    raise ConfigurationError(
                        f"Failed to load settings from {source.path}: {e}",
                        cause=e
                    ) from e
                merged_data = self._deep_merge(merged_data, data)

            merged_data = self._deep_merge(merged_data, self._load_env_vars())

            try:
                self._settings = LagZeroSettings(**merged_data)
            except ValidationError as e:
                errors = []
                for error in e.errors():
                    field = ".".join(str(x) for x in error["loc"])
                    errors.append(f"{field}: {error['msg']}")

                raise ConfigurationError(
                    f"Configuration validation failed: {'; '.join(errors)}"
                ) from e

            logger.info("configuration_loaded", sources=len(self._sources))
            return self._settings

    async def _load_source(self, source: ConfigSource) -> Dict[str, Any]:
        """Load data from a configuration source."""
        if source.path is None:
            return source.data

        if not source.path.exists():
            logger.warning("config_file_not_found", path=str(source.path))
            return {}

        content = await asyncio.to_thread(source.path.read_text, encoding="utf-8")

        if source.source_type == "json":
            data = json.loads(content)
        elif source.source_type == "yaml":
            data = yaml.safe_load(content) or {}
        elif source.source_type == "toml":
            data = toml.loads(content)
        else:
            raise ConfigurationError(f"Unknown source type: {source.source_type}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"Settings file {source.path} must contain a mapping")
        return data

    def _load_env_vars(self) -> Dict[str, Any]:
        """Load configuration from environment variables.

        ``LAGZERO_SUPERVISOR__MAX_RETRIES=5`` maps to ``supervisor.max_retries``.
        """
        result: Dict[str, Any] = {}

        for key, value in os.environ.items():
            if not key.startswith(self._env_prefix):
                continue
            parts = [p for p in key[len(self._env_prefix):].lower().split("__") if p]
            if not parts:
                continue

            current = result
            for part in parts[:-1]:
                current = current.setdefault(part, {})
                if not isinstance(current, dict):
                    break
            else:
                current[parts[-1]] = self._convert_value(value)

        return result

    def _convert_value(self, value: str) -> Any:
        """Convert string value to appropriate type."""
        if value.lower() in ("true", "yes", "on"):
            return True
        elif value.lower() in ("false", "no", "off"):
            return False

        try:
            if "." in value:
                return float(value)
            else:
                return int(value)
        except ValueError:
            pass

        if "," in value:
            return [v.strip() for v in value.split(",")]

        return value

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in update.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def get_settings(self) -> LagZeroSettings:
        """Get the most recently loaded settings."""
        if self._settings is None:
            raise ConfigurationError("Configuration not loaded")
        return self._settings


async def load_settings(
    config_paths: Optional[List[Union[str, Path]]] = None,
    extra_config: Optional[Dict[str, Any]] = None,
    include_defaults: bool = True,
) -> LagZeroSettings:
    """
    Load settings from standard locations.

    Args:
        config_paths: Additional settings files
        extra_config: Extra settings to merge on top
        include_defaults: Also read the well-known settings files

    Returns:
        Loaded settings
    """
    loader = ConfigLoader()

    if include_defaults:
        default_paths = [
            _default_data_dir() / "settings.yaml",
            _default_data_dir() / "settings.toml",
            Path("./lagzero.yaml"),
            Path("./lagzero.toml"),
        ]
        for path in default_paths:
            if path.exists():
                loader.add_source(path, priority=10)

    if config_paths:
        for i, path in enumerate(config_paths):
            loader.add_source(path, priority=20 + i)

    if extra_config:
        loader.add_source(extra_config, priority=100)

    return await loader.load()


__all__ = [
    'LagZeroSettings',
    'LoggingConfig',
    'InstallerConfig',
    'SupervisorConfig',
    'MonitorConfig',
    'RulesConfig',
    'ConfigLoader',
    'load_settings',
    'DEFAULT_RELEASE_FEED',
]
