"""
Payment Channel Configuration System

Unified configuration management with YAML files, environment variables,
validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (PAYCHANNEL_*)
    2. Runtime overrides
    3. User config file (~/.paychannel/config.yaml)
    4. Project config files (./paychannel.yaml, ./config/paychannel.yaml)
    5. Default values

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

T = TypeVar("T")


class ConfigError(Exception):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
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
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[Optional[T], T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])

        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value}")

        old_value = self._value
        self._value = value

        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        """Drop any runtime override."""
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        else:
            return value  # type: ignore

    def on_change(self, callback: Callable[[Optional[T], T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


@dataclass
class RegistryConfig:
    """Configuration for the identity and hub registry."""
    chain_id: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1,
        env_var="PAYCHANNEL_CHAIN_ID",
        description="Chain id bound into every signed message",
        validator=lambda x: x > 0,
    ))
    min_hub_stake: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=0,
        env_var="PAYCHANNEL_MIN_HUB_STAKE",
        description="Default minimal stake for hub registration",
        validator=lambda x: x >= 0,
    ))


@dataclass
class HubConfig:
    """Configuration for hub settlement engines."""
    fee_delay_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=2,
        env_var="PAYCHANNEL_HUB_FEE_DELAY",
        description="Delay before a new hub fee becomes active",
        validator=lambda x: x >= 0,
    ))
    max_fee_bps: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=5000,
        env_var="PAYCHANNEL_HUB_MAX_FEE",
        description="Hard ceiling for the hub fee in basis points",
        validator=lambda x: 0 <= x <= 10000,
    ))
    punishment_unit_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1,
        env_var="PAYCHANNEL_HUB_PUNISHMENT_UNIT",
        description="Length of one punishment escalation unit",
        validator=lambda x: x > 0,
    ))
    punishment_percent: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=4,
        env_var="PAYCHANNEL_HUB_PUNISHMENT_PERCENT",
        description="Percent of total stake charged per late punishment unit",
        validator=lambda x: 0 <= x <= 100,
    ))
    closing_timelock_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="PAYCHANNEL_HUB_CLOSING_TIMELOCK",
        description="Delay between closing a hub and releasing its stake",
        validator=lambda x: x >= 0,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="PAYCHANNEL_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="PAYCHANNEL_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class ProtocolConfig:
    """
    Root configuration for the payment channel protocol.

    Aggregates all component configurations and provides
    loading/saving functionality.
    """
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    hub: HubConfig = field(default_factory=HubConfig)
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
        return yaml.dump(self.to_dict(), default_flow_style=False)


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

        self._config = ProtocolConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[ProtocolConfig], None]] = []
        self.load_defaults()
        self._initialized = True

    @property
    def config(self) -> ProtocolConfig:
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f)

        if data:
            if not isinstance(data, dict):
                raise ConfigError(f"Configuration root must be a mapping: {path}")
            self._apply_dict(data)
            self._config_paths.append(path)

    def load_defaults(
        self,
        base_dir: Optional[Union[str, Path]] = None,
        home: Optional[Union[str, Path]] = None,
    ) -> List[Path]:
        """
        Load the project and user configuration files that exist.

        Later files win, so the user file overrides the project files.
        Returns the files loaded.
        """
        base_dir = Path.cwd() if base_dir is None else Path(base_dir)
        home = Path.home() if home is None else Path(home)
        default_paths = [
            base_dir / "paychannel.yaml",
            base_dir / "config" / "paychannel.yaml",
            home / ".paychannel" / "config.yaml",
        ]

        loaded = []
        for path in default_paths:
            if path.exists():
                self.load_from_file(path)
                loaded.append(path)
        return loaded

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary values to configuration."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                path = f"{prefix}.{key}" if prefix else key
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown config key: {path}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, path)
                else:
                    raise ConfigError(f"Invalid config section: {path}")

        apply_to_config(self._config, data, "")

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("hub.fee_delay_seconds", 10)
        """
        parts = path.split(".")
        obj = self._config

        for part in parts[:-1]:
            obj = getattr(obj, part)

        attr = getattr(obj, parts[-1], None)
        if isinstance(attr, ConfigValue):
            attr.set(value)
        else:
            raise ConfigError(f"Invalid config path: {path}")

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("hub.punishment_unit_seconds")
        """
        parts = path.split(".")
        obj: Any = self._config

        for part in parts:
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)

        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def watch(self, callback: Callable[[ProtocolConfig], None]) -> None:
        """Register a callback for configuration changes."""
        self._watchers.append(callback)

    def reload(self) -> None:
        """Reload configuration from all loaded files."""
        paths = list(self._config_paths)
        self._config_paths = []
        for path in paths:
            if path.exists():
                self.load_from_file(path)

        for watcher in self._watchers:
            watcher(self._config)

    def reset(self) -> None:
        """Restore defaults, dropping overrides and loaded files."""
        self._config = ProtocolConfig()
        self._config_paths = []

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
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value}")
                except (TypeError, ValueError) as e:
                    errors.append(f"{path}: {e}")
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


def get_config() -> ProtocolConfig:
    """Get the current payment channel configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
