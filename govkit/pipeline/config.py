"""
govkit Configuration System

Unified configuration management with YAML files, environment variables,
validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (GOVKIT_*)
    2. Runtime overrides
    3. User config file (~/.govkit/config.yaml)
    4. Project config file (./govkit.yaml)
    5. Default values

Example govkit.yaml:

    retry:
      max_attempts: 5
      base_delay_seconds: 0.5
    poll:
      initial_interval_seconds: 15
      timeout_seconds: 2h
    relay:
      destination: mainnet
      budget: 500000

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from govkit.core import parse_duration_seconds

T = TypeVar("T")

_log = logging.getLogger("govkit.config")


class ConfigError(Exception):
    """Configuration error."""
    pass


class ValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    parser: Optional[Callable[[Any], T]] = None
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[T, T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            raw = os.environ[self.env_var]
            try:
                return self._coerce(raw)
            except (TypeError, ValueError) as e:
                raise ValidationError(f"Invalid value in {self.env_var}: {raw!r} ({e})") from e

        return self._value if self._value is not None else self.default

    def set(self, value: Any) -> None:
        """Set the value with validation."""
        if self.parser is not None:
            try:
                value = self.parser(value)
            except (TypeError, ValueError) as e:
                raise ValidationError(f"Invalid value for config: {value!r} ({e})") from e
        elif isinstance(self.default, float) and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)
        if self.validator:
            try:
                valid = self.validator(value)
            except TypeError:
                valid = False
            if not valid:
                raise ValidationError(f"Invalid value for config: {value}")

        old_value = self._value
        self._value = value

        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        if self.parser is not None:
            return self.parser(value)

        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        elif target_type == float:
            return float(value)  # type: ignore
        elif target_type == list:
            return value.split(",")  # type: ignore
        else:
            return value  # type: ignore

    def on_change(self, callback: Callable[[T, T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


@dataclass
class RetrySection:
    """Retry policy for network-facing port calls."""
    max_attempts: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="GOVKIT_RETRY_MAX_ATTEMPTS",
        description="Attempts per port call, including the first",
        validator=lambda x: x >= 1,
    ))
    base_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=1.0,
        env_var="GOVKIT_RETRY_BASE_DELAY",
        description="Delay before the first retry",
        validator=lambda x: x >= 0,
    ))
    max_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=30.0,
        env_var="GOVKIT_RETRY_MAX_DELAY",
        description="Upper bound on a single retry delay",
        validator=lambda x: x >= 0,
    ))
    backoff: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="exponential",
        env_var="GOVKIT_RETRY_BACKOFF",
        description="Backoff strategy (fixed, linear, exponential, exponential_jitter)",
        validator=lambda x: x in ("fixed", "linear", "exponential", "exponential_jitter"),
    ))


@dataclass
class PollSection:
    """Enactment poll loop."""
    initial_interval_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=15.0,
        env_var="GOVKIT_POLL_INTERVAL",
        description="Sleep before the second poll",
        validator=lambda x: x > 0,
        parser=parse_duration_seconds,
    ))
    multiplier: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=2.0,
        env_var="GOVKIT_POLL_MULTIPLIER",
        description="Growth factor between consecutive sleeps",
        validator=lambda x: x >= 1,
    ))
    max_interval_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=300.0,
        env_var="GOVKIT_POLL_MAX_INTERVAL",
        description="Upper bound on a single sleep",
        validator=lambda x: x > 0,
        parser=parse_duration_seconds,
    ))
    timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=3600.0,
        env_var="GOVKIT_POLL_TIMEOUT",
        description="Total wait before reporting EnactmentTimeout",
        validator=lambda x: x >= 0,
        parser=parse_duration_seconds,
    ))


@dataclass
class RelaySection:
    """Default routing metadata for proposals."""
    destination: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="mainnet",
        env_var="GOVKIT_RELAY_DESTINATION",
        description="Destination domain for proposals",
        validator=lambda x: bool(x),
    ))
    budget: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=500000,
        env_var="GOVKIT_RELAY_BUDGET",
        description="Remote execution budget (gas) per proposal",
        validator=lambda x: 0 <= x < 2 ** 64,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="GOVKIT_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    enable_tracing: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="GOVKIT_TRACING_ENABLED",
        description="Record a span per stage",
    ))


@dataclass
class GovkitConfig:
    """
    Root configuration for govkit.

    Aggregates all section configurations and provides
    loading/saving functionality.
    """
    retry: RetrySection = field(default_factory=RetrySection)
    poll: PollSection = field(default_factory=PollSection)
    relay: RelaySection = field(default_factory=RelaySection)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        """Convert to YAML string."""
        return yaml.safe_dump(self.to_dict(), default_flow_style=False)


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Thread-safe singleton that manages configuration lifecycle.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._config = GovkitConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[GovkitConfig], None]] = []
        self._initialized = True

    @property
    def config(self) -> GovkitConfig:
        """Get the current configuration."""
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration root must be a mapping: {path}")

        self._apply_dict(data)
        if path not in self._config_paths:
            self._config_paths.append(path)

    def load_defaults(self) -> List[Path]:
        """Load default configuration files if they exist."""
        default_paths = [
            Path.home() / ".govkit" / "config.yaml",
            Path("config/govkit.yaml"),
            Path("govkit.yaml"),
        ]

        loaded = []
        for path in default_paths:
            if path.exists():
                self.load_from_file(path)
                _log.debug("Loaded configuration from %s", path)
                loaded.append(path)
        return loaded

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary values to configuration."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                path = f"{prefix}{key}"
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown configuration key: {path}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, f"{path}.")
                else:
                    raise ConfigError(f"Expected a mapping for section: {path}")

        apply_to_config(self._config, data, "")

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("retry.max_attempts", 5)
        """
        parts = path.split(".")
        obj = self._config

        for part in parts[:-1]:
            obj = getattr(obj, part, None)
            if obj is None:
                raise ConfigError(f"Invalid config path: {path}")

        attr = getattr(obj, parts[-1], None)
        if isinstance(attr, ConfigValue):
            attr.set(value)
        else:
            raise ConfigError(f"Invalid config path: {path}")

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("poll.timeout_seconds")
        """
        obj: Any = self._config

        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)

        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def watch(self, callback: Callable[[GovkitConfig], None]) -> None:
        """Register a callback for configuration changes."""
        self._watchers.append(callback)

    def reload(self) -> None:
        """Reload configuration from all loaded files."""
        for path in self._config_paths:
            if path.exists():
                self.load_from_file(path)

        for watcher in self._watchers:
            watcher(self._config)

    def reset(self) -> None:
        """Drop all overrides, loaded files and watchers."""
        self._config = GovkitConfig()
        self._config_paths = []
        self._watchers = []

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                except ConfigError as e:
                    errors.append(f"{path}: {e}")
                    return
                if obj.validator and not obj.validator(value):
                    errors.append(f"{path}: validation failed for value {value}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = str(obj.default)
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


def get_config() -> GovkitConfig:
    """Get the current govkit configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
