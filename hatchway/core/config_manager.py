from __future__ import annotations

import json
import logging
import os
import pathlib
import tempfile
from copy import deepcopy
from typing import Annotated, Any, Callable, Dict, List, Literal, Mapping, Optional, Set, Tuple, Union

import yaml
from pydantic import AfterValidator, BaseModel, Field, ValidationError

from hatchway.core.base import HatchwayManager
from hatchway.utils.exceptions import ConfigurationError, ManagerInitializationError

logger = logging.getLogger(__name__)

ConfigListener = Callable[[str, Any], None]

LOG_LEVEL_NAMES = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _log_level(value: Any) -> str:
    level = str(value).upper()
    if level not in LOG_LEVEL_NAMES:
        raise ValueError(f"unknown log level {value!r}")
    return level


LogLevel = Annotated[str, AfterValidator(_log_level)]


class LogFileConfig(BaseModel):
    enabled: bool = False
    path: str = "logs/hatchway.log"
    max_bytes: int = Field(10 * 1024 * 1024, gt=0)
    backup_count: int = Field(5, ge=0)


class ConsoleConfig(BaseModel):
    enabled: bool = True
    level: LogLevel = "INFO"


class LoggingConfig(BaseModel):
    """Log level, output format and handlers."""

    level: LogLevel = "INFO"
    format: Literal["json", "text"] = "json"
    file: LogFileConfig = Field(default_factory=LogFileConfig)
    console: ConsoleConfig = Field(default_factory=ConsoleConfig)


class GitHubConfig(BaseModel):
    api_url: str = "https://api.github.com"
    web_url: str = "https://github.com"
    timeout: float = Field(15.0, gt=0)
    download_timeout: float = Field(300.0, gt=0)
    user_agent: str = "hatchway-updater"


class SecurityConfig(BaseModel):
    """Secret used to encrypt stored keys, and signing token lifetime."""

    encryption_key: str = ""
    jwt_lifetime_seconds: int = Field(540, gt=0, le=600)


class CacheConfig(BaseModel):
    release_ttl: float = Field(3 * 3600, ge=0)
    repository_index_ttl: float = Field(300, ge=0)
    token_safety_margin: float = Field(60, ge=0)


class RetryConfig(BaseModel):
    max_attempts: int = Field(3, ge=1)
    initial_delay: float = Field(0.25, ge=0)
    max_delay: float = Field(8.0, ge=0)
    low_water_mark: int = Field(10, ge=0)
    max_rate_limit_wait: float = Field(60.0, ge=0)


class PackagesConfig(BaseModel):
    """Where plugins and themes live, and where staging and backups go."""

    plugins_dir: str = "data/plugins"
    themes_dir: str = "data/themes"
    temp_dir: str = ""
    backup_dir: str = "data/backups"
    backups_enabled: bool = True


class StoreConfig(BaseModel):
    type: Literal["memory", "file"] = "file"
    path: str = "data/hatchway-store.json"


class HatchwayConfig(BaseModel):
    """Validated configuration tree.

    Every section has defaults, so an empty file (or no file at all)
    yields a complete configuration. Unknown keys are ignored.
    """

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    packages: PackagesConfig = Field(default_factory=PackagesConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)


def assign_path(config: Dict[str, Any], path: List[str], value: Any) -> None:
    """Set ``value`` at ``path`` in a nested dict, replacing scalars on the way."""
    if not path:
        return

    node = config
    for key in path[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = node[key] = {}
        node = child
    node[path[-1]] = value


def deep_merge(base: Dict[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``overrides`` into a copy of ``base``; ``None`` values are skipped."""
    merged = deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        elif value is not None:
            merged[key] = deepcopy(value)
    return merged


def _describe(error: ValidationError) -> str:
    return ", ".join(
        f"{'.'.join(str(part) for part in item['loc'])}: {item['msg']}"
        for item in error.errors()
    )


class ConfigManager(HatchwayManager):
    """Loads, validates and serves Hatchway's configuration.

    Values come from the defaults in :class:`HatchwayConfig`, then a YAML or
    JSON file, then environment variables. ``HATCHWAY_RETRY__MAX_ATTEMPTS=5``
    overrides ``retry.max_attempts``; the double underscore separates
    nesting levels and pydantic converts the string to the field's type.

    Values set at runtime are validated, written back to the file they
    were loaded from, and announced to listeners registered on the key or
    one of its parents.
    """

    def __init__(
            self,
            config_path: Optional[Union[str, pathlib.Path]] = None,
            env_prefix: str = "HATCHWAY_",
            environ: Optional[Mapping[str, str]] = None
    ) -> None:
        super().__init__(name="config_manager")
        self._config_path = pathlib.Path(config_path) if config_path else pathlib.Path("hatchway.yaml")
        self._env_prefix = env_prefix
        self._environ = environ
        self._settings: Optional[HatchwayConfig] = None
        self._data: Dict[str, Any] = {}
        self._loaded_from_file = False
        self._env_vars_applied: Set[str] = set()
        self._listeners: List[Tuple[str, ConfigListener]] = []

    def initialize(self) -> None:
        """Read the file and the environment and validate the result.

        Raises:
            ManagerInitializationError: If the file cannot be read or the
                merged configuration is invalid
        """
        try:
            raw = deep_merge(self._read_file(), self._env_overrides())
            self._apply(self._validate(raw))
            self._mark_ready()
        except Exception as e:
            raise ManagerInitializationError(
                f"Failed to initialize ConfigManager: {str(e)}",
                manager_name=self.name
            ) from e

    def _read_file(self) -> Dict[str, Any]:
        if not self._config_path.exists():
            return {}

        suffix = self._config_path.suffix.lower()
        content = self._config_path.read_text(encoding="utf-8")
        try:
            if suffix in (".yaml", ".yml"):
                loaded = yaml.safe_load(content)
            elif suffix == ".json":
                loaded = json.loads(content)
            else:
                raise ConfigurationError(
                    f"Unsupported config file format: {suffix}",
                    config_key="config_path"
                )
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(
                f"Error parsing config file {self._config_path}: {str(e)}",
                config_key="config_path"
            ) from e

        if loaded is None:
            return {}
        if not isinstance(loaded, dict):
            raise ConfigurationError(
                f"Config file {self._config_path} must contain a mapping",
                config_key="config_path"
            )
        self._loaded_from_file = True
        return loaded

    def _env_overrides(self) -> Dict[str, Any]:
        environ = os.environ if self._environ is None else self._environ
        overrides: Dict[str, Any] = {}
        for name, value in environ.items():
            if not name.startswith(self._env_prefix):
                continue
            path = name[len(self._env_prefix):].lower().split("__")
            assign_path(overrides, path, value)
            self._env_vars_applied.add(name)
        return overrides

    @staticmethod
    def _validate(data: Mapping[str, Any], key: Optional[str] = None) -> HatchwayConfig:
        try:
            return HatchwayConfig.model_validate(data)
        except ValidationError as e:
            message = (
                f"Invalid configuration value for {key}: {_describe(e)}" if key
                else f"Invalid configuration: {_describe(e)}"
            )
            raise ConfigurationError(
                message,
                config_key=key,
                details={"validation_errors": e.errors()}
            ) from e

    def _apply(self, settings: HatchwayConfig) -> None:
        self._settings = settings
        self._data = settings.model_dump()

    def _require_initialized(self, key: str) -> None:
        if not self._initialized:
            raise ConfigurationError(
                "Configuration used before initialization",
                config_key=key
            )

    @property
    def settings(self) -> HatchwayConfig:
        """The validated configuration as typed sections."""
        self._require_initialized("settings")
        return self._settings

    def get(self, key: str, default: Any = None) -> Any:
        """Look up a dotted key such as ``github.api_url``.

        Raises:
            ConfigurationError: If the manager isn't initialized
        """
        self._require_initialized(key)

        node: Any = self._data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value: Any) -> None:
        """Change a dotted key, keeping the configuration valid.

        Raises:
            ConfigurationError: If the manager isn't initialized or the
                value is rejected
        """
        self._require_initialized(key)

        candidate = deepcopy(self._data)
        assign_path(candidate, key.split("."), value)
        self._apply(self._validate(candidate, key))

        self._write_file()
        self._notify(key, self.get(key))

    def _write_file(self) -> None:
        if not self._loaded_from_file:
            return

        directory = self._config_path.parent
        directory.mkdir(parents=True, exist_ok=True)
        data = self._settings.model_dump(mode="json")

        with tempfile.NamedTemporaryFile(
                mode="w", encoding="utf-8", dir=directory, suffix=".tmp", delete=False
        ) as tmp:
            if self._config_path.suffix.lower() == ".json":
                json.dump(data, tmp, indent=2)
            else:
                yaml.safe_dump(data, tmp, default_flow_style=False, sort_keys=False)

        os.replace(tmp.name, self._config_path)

    def register_listener(self, key: str, callback: ConfigListener) -> None:
        """Call ``callback(key, value)`` when ``key`` or anything below it changes."""
        if (key, callback) not in self._listeners:
            self._listeners.append((key, callback))

    def unregister_listener(self, key: str, callback: ConfigListener) -> None:
        if (key, callback) in self._listeners:
            self._listeners.remove((key, callback))

    def _notify(self, key: str, value: Any) -> None:
        for prefix, callback in list(self._listeners):
            if key != prefix and not key.startswith(f"{prefix}."):
                continue
            try:
                callback(key, value)
            except Exception as e:
                logger.error(f"Config listener for {prefix} failed on {key}: {str(e)}", exc_info=True)

    def shutdown(self) -> None:
        self._mark_stopped()

    def status(self) -> Dict[str, Any]:
        status = super().status()
        status.update({
            "config_file": str(self._config_path) if self._loaded_from_file else None,
            "loaded_from_file": self._loaded_from_file,
            "env_vars_applied": len(self._env_vars_applied),
            "registered_listeners": len(self._listeners),
        })
        return status
