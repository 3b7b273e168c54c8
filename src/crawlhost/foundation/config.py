"""Configuration management for the crawlhost system."""

import copy
import os
from datetime import timezone, tzinfo
from pathlib import Path
from typing import Any, Dict, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def resolve_timezone(name: str) -> tzinfo:
    """Turn a timezone name into a tzinfo.

    ``UTC`` never touches the zoneinfo database, so it works on hosts
    without tz data installed.
    """
    if name.upper() in ("UTC", "Z"):
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {name}") from e


class GlobalConfig(BaseModel):
    """Global system configuration."""
    log_level: str = "WARNING"
    log_file: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class HostDbConfig(BaseModel):
    """Host database record settings."""
    report_timezone: str = "UTC"

    model_config = ConfigDict(extra="allow")


class JobsConfig(BaseModel):
    """Job controller settings."""
    record_metrics: bool = True

    model_config = ConfigDict(extra="allow")


class CrawlHostConfig(BaseSettings):
    """Main configuration class that combines all settings."""

    version: str = "1.0"

    global_: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    hostdb: HostDbConfig = Field(default_factory=HostDbConfig)
    jobs: JobsConfig = Field(default_factory=JobsConfig)

    model_config = SettingsConfigDict(
        env_prefix="CRAWLHOST_",
        env_nested_delimiter="__",
        case_sensitive=False,
        populate_by_name=True,
        extra="allow"
    )

    @field_validator("global_")
    @classmethod
    def expand_log_file(cls, v: GlobalConfig) -> GlobalConfig:
        if v.log_file and v.log_file.startswith("~"):
            v.log_file = str(Path(v.log_file).expanduser())

        return v

    @field_validator("hostdb")
    @classmethod
    def validate_timezone(cls, v: HostDbConfig) -> HostDbConfig:
        """Reject timezone names the zoneinfo database does not know."""
        resolve_timezone(v.report_timezone)
        return v


def _read_yaml(path: Path) -> Dict[str, Any]:
    from .errors import ConfigurationError

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read configuration file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {path} must contain a mapping")
    return data


def _coerce_env_value(raw: str) -> Any:
    lowered = raw.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if raw.isdigit():
        return int(raw)
    return raw


def _deep_merge(target: Dict[str, Any], source: Dict[str, Any]) -> None:
    for key, value in source.items():
        existing = target.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            _deep_merge(existing, value)
        else:
            target[key] = value


class ConfigManager:
    """Layered configuration: model defaults, then the YAML file, then
    ``CRAWLHOST_SECTION__KEY`` environment variables.

    Settings are held as a plain nested dict addressed with dot notation
    (``hostdb.report_timezone``); :attr:`config` validates that dict into a
    :class:`CrawlHostConfig` on demand.
    """

    ENV_PREFIX = "CRAWLHOST_"
    PATH_VARIABLE = "CRAWLHOST_CONFIG_PATH"
    LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        self.config_path = Path(config_path) if config_path else None
        self._config: Dict[str, Any] = {}
        self._model: Optional[CrawlHostConfig] = None
        self._load_defaults()

    @classmethod
    def default_config_path(cls) -> Path:
        """``$CRAWLHOST_CONFIG_PATH`` or ``~/.crawlhost/config.yaml``."""
        env_path = os.getenv(cls.PATH_VARIABLE)
        if env_path:
            return Path(env_path).expanduser()
        return Path.home() / ".crawlhost" / "config.yaml"

    def _load_defaults(self) -> None:
        self._model = CrawlHostConfig()
        self._config = self._model.model_dump(by_alias=True)

    def _changed(self) -> None:
        self._model = None

    @property
    def config(self) -> CrawlHostConfig:
        """Current settings as a validated model."""
        if self._model is None:
            self._model = CrawlHostConfig(**self._config)
        return self._model

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Look up a dotted key such as ``jobs.record_metrics``."""
        node: Any = self._config
        for part in key.split('.'):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set_setting(self, key: str, value: Any) -> None:
        """Set a dotted key at runtime, creating sections as needed."""
        *sections, leaf = key.split('.')
        node = self._config
        for part in sections:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        node[leaf] = value
        self._changed()

    def get_section(self, section_name: str) -> Optional[Dict[str, Any]]:
        return self._config.get(section_name)

    def get_all_settings(self) -> Dict[str, Any]:
        return copy.deepcopy(self._config)

    def validate_config(self) -> Dict[str, Any]:
        """Check the current settings without raising.

        Returns:
            ``{"valid": bool, "errors": [...], "warnings": [...]}``
        """
        errors = []
        warnings = []

        try:
            CrawlHostConfig(**self._config)
        except ValueError as e:
            errors.append(f"Configuration validation failed: {e}")

        level = str(self.get_setting("global.log_level", "WARNING")).upper()
        if level not in self.LOG_LEVELS:
            warnings.append(f"Unknown log level '{level}', INFO will be used")

        return {"valid": not errors, "errors": errors, "warnings": warnings}

    def load_from_file(self) -> None:
        """Merge the YAML file at ``config_path`` over the current settings.

        A missing file is not an error.

        Raises:
            ConfigurationError: If the file exists but cannot be parsed
        """
        if self.config_path is None or not self.config_path.exists():
            return
        self.merge_config(_read_yaml(self.config_path))

    def save_to_file(self) -> None:
        if self.config_path is None:
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(self._config, f, default_flow_style=False, indent=2)

    def load_from_environment(self) -> None:
        """Apply ``CRAWLHOST_SECTION__KEY=value`` variables."""
        for name, raw in os.environ.items():
            if not name.startswith(self.ENV_PREFIX) or name == self.PATH_VARIABLE:
                continue
            # CRAWLHOST_HOSTDB__REPORT_TIMEZONE -> hostdb.report_timezone
            key = name[len(self.ENV_PREFIX):].lower().replace("__", ".")
            self.set_setting(key, _coerce_env_value(raw))

    def merge_config(self, new_config: Dict[str, Any]) -> None:
        _deep_merge(self._config, new_config)
        self._changed()

    def reload_config(self) -> None:
        """Start over from defaults, then file, then environment."""
        self._load_defaults()
        if self.config_path is None:
            candidate = self.default_config_path()
            if candidate.exists():
                self.config_path = candidate
        self.load_from_file()
        self.load_from_environment()


_config_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    """Get the global configuration manager instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
        _config_manager.reload_config()
    return _config_manager


def reset_config_manager() -> None:
    """Drop the global configuration manager so the next call rebuilds it."""
    global _config_manager
    _config_manager = None


def get_config() -> CrawlHostConfig:
    """Get the current configuration."""
    return get_config_manager().config
