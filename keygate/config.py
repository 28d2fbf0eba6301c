"""Gateway Configuration Management with Validation."""

import os
from dataclasses import dataclass, field
from typing import List, Optional
from pathlib import Path
import yaml


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class StoreConfig:
    """Credential store configuration."""

    path: str = "data/api-keys.json"
    on_read_error: str = "raise"

    def validate(self):
        if not self.path:
            raise ConfigError("path must not be empty (use ':memory:' for an in-memory store)")
        if self.on_read_error not in ("raise", "empty"):
            raise ConfigError(f"on_read_error must be 'raise' or 'empty': {self.on_read_error}")


@dataclass
class SecurityConfig:
    """Key issuance and admin bootstrap configuration."""

    bootstrap_admin_key: Optional[str] = None
    bootstrap_admin_owner: str = "admin"
    bootstrap_admin_limit: int = 1000000
    key_prefix: str = "sk_"
    key_length: int = 24
    near_limit_ratio: float = 0.8

    def validate(self):
        if self.key_length < 16:
            raise ConfigError(f"key_length must be at least 16: {self.key_length}")
        if not 0 < self.near_limit_ratio <= 1:
            raise ConfigError(f"near_limit_ratio must be in (0, 1]: {self.near_limit_ratio}")
        if self.bootstrap_admin_limit <= 0:
            raise ConfigError(f"bootstrap_admin_limit must be positive: {self.bootstrap_admin_limit}")


@dataclass
class ServerConfig:
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 3000
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    def validate(self):
        if not 0 < self.port < 65536:
            raise ConfigError(f"port must be 1-65535: {self.port}")


@dataclass
class ObservabilityConfig:
    """Observability configuration."""

    log_level: str = "INFO"
    log_format: str = "json"
    metrics_enabled: bool = True

    def validate(self):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_levels:
            raise ConfigError(f"Invalid log level: {self.log_level}. Valid: {valid_levels}")
        if self.log_format not in ("json", "text"):
            raise ConfigError(f"log_format must be 'json' or 'text': {self.log_format}")


_INT_FIELDS = {("security", "bootstrap_admin_limit"), ("security", "key_length"), ("server", "port")}
_FLOAT_FIELDS = {("security", "near_limit_ratio")}
_BOOL_FIELDS = {("observability", "metrics_enabled")}
_LIST_FIELDS = {("server", "cors_origins")}


def _coerce(section: str, attr: str, value: str):
    """Convert an environment string to the field's type."""
    try:
        if (section, attr) in _INT_FIELDS:
            return int(value)
        if (section, attr) in _FLOAT_FIELDS:
            return float(value)
    except ValueError:
        raise ConfigError(f"{section}.{attr} expects a number: {value!r}") from None
    if (section, attr) in _BOOL_FIELDS:
        return value.strip().lower() in ("1", "true", "yes", "on")
    if (section, attr) in _LIST_FIELDS:
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


@dataclass
class GatewayConfig:
    """Top-level gateway configuration."""

    store: StoreConfig = field(default_factory=StoreConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    SECTIONS = ("store", "security", "server", "observability")

    @classmethod
    def from_env(cls, base: Optional["GatewayConfig"] = None) -> "GatewayConfig":
        """Load configuration from environment variables."""
        config = base or cls()

        env_overrides = {
            "KEYGATE_STORE_PATH": ("store", "path"),
            "KEYGATE_STORE_ON_READ_ERROR": ("store", "on_read_error"),
            "KEYGATE_ADMIN_KEY": ("security", "bootstrap_admin_key"),
            "KEYGATE_ADMIN_OWNER": ("security", "bootstrap_admin_owner"),
            "KEYGATE_ADMIN_LIMIT": ("security", "bootstrap_admin_limit"),
            "KEYGATE_NEAR_LIMIT_RATIO": ("security", "near_limit_ratio"),
            "KEYGATE_HOST": ("server", "host"),
            "KEYGATE_PORT": ("server", "port"),
            "KEYGATE_CORS_ORIGINS": ("server", "cors_origins"),
            "KEYGATE_LOG_LEVEL": ("observability", "log_level"),
            "KEYGATE_LOG_FORMAT": ("observability", "log_format"),
            "KEYGATE_METRICS_ENABLED": ("observability", "metrics_enabled"),
        }

        for env_var, (section, attr) in env_overrides.items():
            value = os.environ.get(env_var)
            if value:
                section_config = getattr(config, section)
                setattr(section_config, attr, _coerce(section, attr, value))

        return config

    @classmethod
    def from_file(cls, path: str) -> "GatewayConfig":
        """Load configuration from YAML/JSON file."""
        p = Path(path)
        if not p.exists():
            raise ConfigError(f"Config file not found: {path}")

        with open(p) as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ConfigError(f"Config file must hold a mapping: {path}")

        config = cls()
        for section, values in data.items():
            if section in cls.SECTIONS and isinstance(values, dict):
                section_obj = getattr(config, section)
                for key, value in values.items():
                    if hasattr(section_obj, key):
                        setattr(section_obj, key, value)

        return config

    @classmethod
    def load(cls, path: Optional[str] = None) -> "GatewayConfig":
        """File (if given, else ``KEYGATE_CONFIG``) overlaid with environment variables."""
        path = path or os.environ.get("KEYGATE_CONFIG")
        config = cls.from_file(path) if path else cls()
        return cls.from_env(config)

    def validate(self) -> bool:
        """Validate entire configuration."""
        errors = []

        for section_name in self.SECTIONS:
            section = getattr(self, section_name)
            try:
                section.validate()
            except ConfigError as e:
                errors.append(f"{section_name}: {e}")

        if errors:
            raise ConfigError("Configuration errors:\n" + "\n".join(errors))

        return True
