"""
PoSe Configuration System

Configuration for the verification core with YAML files, environment
variables and validation.

Configuration Sources (in order of precedence):
    1. Environment variables (POSE_*)
    2. Runtime overrides / loaded files
    3. Project config file (./poseguard.yaml, ./config/poseguard.yaml)
    4. Default values

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from poseguard.hardening import SUPPORTED_DIGESTS

T = TypeVar("T")

DURABILITY_MODES = ("sync", "write", "deferred")
CHALLENGE_TYPE_NAMES = ("uptime", "storage", "relay")


class ConfigError(Exception):
    """Configuration error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding and validation.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        """Get the current value; the environment wins over everything else."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: Any) -> None:
        """Set the value with coercion and validation."""
        if isinstance(value, str) and not isinstance(self.default, str):
            value = self._coerce(value)
        if self.validator and not self.validator(value):
            raise ConfigError(f"Invalid value for config: {value!r}")
        self._value = value

    def reset(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to the type of the default."""
        target_type = type(self.default)
        try:
            if target_type == bool:
                return value.lower() in ("true", "1", "yes", "on")  # type: ignore
            elif target_type == int:
                return int(value)  # type: ignore
            elif target_type == list:
                return [v.strip() for v in value.split(",") if v.strip()]  # type: ignore
            return value  # type: ignore
        except ValueError as e:
            raise ConfigError(f"Cannot coerce {value!r} to {target_type.__name__}") from e


@dataclass
class NonceConfig:
    """Configuration for the Nonce Registry."""
    ttl_ms: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=600_000,
        env_var="POSE_NONCE_TTL_MS",
        description="How long a consumed challenge nonce is remembered (ms)",
        validator=lambda x: isinstance(x, int) and x > 0,
    ))
    max_entries: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=100_000,
        env_var="POSE_NONCE_MAX_ENTRIES",
        description="Capacity bound; oldest nonces are evicted first",
        validator=lambda x: isinstance(x, int) and x > 0,
    ))
    persistence_path: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="POSE_NONCE_PERSISTENCE_PATH",
        description="Append-only log of consumed nonces (empty = memory only)",
    ))


@dataclass
class VerifierConfig:
    """Configuration for the Receipt Verifier."""
    max_deadline_ms: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=300_000,
        env_var="POSE_VERIFIER_MAX_DEADLINE_MS",
        description="Largest response window any challenge type may use (ms)",
        validator=lambda x: isinstance(x, int) and x > 0,
    ))
    required_types: ConfigValue[list] = field(default_factory=lambda: ConfigValue(
        default=[],
        env_var="POSE_VERIFIER_REQUIRED_TYPES",
        description="Challenge types that must have a witness predicate (uptime, storage, relay)",
        validator=lambda x: isinstance(x, list) and all(t in CHALLENGE_TYPE_NAMES for t in x),
    ))


@dataclass
class ReplayConfig:
    """Configuration for the cross-chain Replay Guard."""
    persistence_path: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="POSE_REPLAY_PERSISTENCE_PATH",
        description="Snapshot file for replay state (empty = memory only)",
    ))
    durability: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="sync",
        env_var="POSE_REPLAY_DURABILITY",
        description="sync (fsync per commit), write (rename, no fsync), deferred (explicit flush)",
        validator=lambda x: x in DURABILITY_MODES,
    ))


@dataclass
class DigestConfig:
    """Configuration for the digest primitive."""
    algorithm: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="sha256",
        env_var="POSE_DIGEST_ALGORITHM",
        description="256-bit digest for replay keys and body fingerprints",
        validator=lambda x: x in SUPPORTED_DIGESTS,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for logging."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="POSE_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="POSE_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class PoseConfig:
    """
    Root configuration.

    Aggregates all component configurations and provides export helpers.
    """
    nonce: NonceConfig = field(default_factory=NonceConfig)
    verifier: VerifierConfig = field(default_factory=VerifierConfig)
    replay: ReplayConfig = field(default_factory=ReplayConfig)
    digest: DigestConfig = field(default_factory=DigestConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False)

    def apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply nested dictionary values; unknown keys raise ConfigError."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any], path: str) -> None:
            for key, value in values.items():
                key_path = f"{path}.{key}" if path else key
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown config key: {key_path}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, key_path)
                else:
                    raise ConfigError(f"Invalid config section: {key_path}")

        apply_to_config(self, data, "")

    def validate(self) -> List[str]:
        """Validate all values and cross-field rules. Returns error messages."""
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value!r}")
                except ConfigError as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self)
        if not errors:
            ttl = self.nonce.ttl_ms.get()
            max_deadline = self.verifier.max_deadline_ms.get()
            if ttl <= max_deadline:
                errors.append(
                    f"nonce.ttl_ms ({ttl}) must exceed verifier.max_deadline_ms ({max_deadline})"
                )
        return errors


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
        self._config = PoseConfig()
        self._config_paths: List[Path] = []
        self._initialized = True

    @property
    def config(self) -> PoseConfig:
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
        self._config.apply_dict(data)
        self._config_paths.append(path)

    def load_defaults(self) -> List[Path]:
        """Load the default configuration files that exist. Returns the loaded paths."""
        loaded = []
        for path in (Path("poseguard.yaml"), Path("config/poseguard.yaml")):
            if path.exists():
                self.load_from_file(path)
                loaded.append(path)
        return loaded

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by dotted path.

        Example: manager.set("nonce.ttl_ms", 900000)
        """
        attr = self._resolve(path)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        attr.set(value)

    def get(self, path: str) -> Any:
        """Get a configuration value by dotted path."""
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        raise ConfigError(f"Invalid config path: {path}")

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, "__dataclass_fields__") or part not in obj.__dataclass_fields__:
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def validate(self) -> List[str]:
        return self._config.validate()

    def reset(self) -> None:
        """Drop loaded files and overrides, returning to defaults."""
        self._config = PoseConfig()
        self._config_paths = []

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = obj.default
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


def get_config() -> PoseConfig:
    """Get the current configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    return ConfigManager()
