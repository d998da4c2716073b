"""Frozen dataclasses for configuration and YAML loader with env-var interpolation."""

from __future__ import annotations

import dataclasses
import os
import re
import types
import typing
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import yaml

from .balancer import DEFAULT_STRATEGIES
from .exceptions import ConfigError

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")

_TRUE_STRINGS = ("true", "yes", "on", "1")
_FALSE_STRINGS = ("false", "no", "off", "0")


def _interpolate_env(value: str) -> str:
    """Replace ${ENV_VAR} placeholders with environment variable values."""

    def _replace(match: re.Match) -> str:
        env_key = match.group(1)
        env_val = os.environ.get(env_key)
        if env_val is None:
            raise ConfigError(f"Environment variable '{env_key}' is not set")
        return env_val

    return _ENV_PATTERN.sub(_replace, value)


def _walk_and_interpolate(obj: Any) -> Any:
    """Recursively interpolate env vars in strings throughout a nested structure."""
    if isinstance(obj, str):
        return _interpolate_env(obj)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(v) for v in obj]
    return obj


def split_endpoints(default_zone: str) -> list[str]:
    """Split a comma-separated zone list into endpoint URLs ending in '/'."""
    endpoints = []
    for raw in default_zone.split(","):
        url = raw.strip()
        if not url:
            continue
        if not url.endswith("/"):
            url += "/"
        endpoints.append(url)
    return endpoints


@dataclass(frozen=True)
class EurekaConfig:
    default_zone: str = "http://localhost:8761/eureka/"  # comma-separated for replicas
    app: str = "server"
    port: int = 80
    ip_address: str = ""  # empty = first non-loopback IPv4 address
    hostname: str = ""  # empty = ip_address
    renewal_interval_seconds: int = 30
    registry_fetch_interval_seconds: int = 15
    lease_duration_seconds: int = 90
    registration_backoff_seconds: int = 5
    timeout: int = 10
    verify_ssl: bool = True
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def endpoints(self) -> list[str]:
        return split_endpoints(self.default_zone)


@dataclass(frozen=True)
class DispatchConfig:
    strategy: str = "random"
    timeout: int = 10


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "json"  # "json" or "text"


@dataclass(frozen=True)
class AppConfig:
    eureka: EurekaConfig = field(default_factory=EurekaConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _get_dataclass_type(ft: Any) -> type | None:
    """Return the underlying dataclass type from a type annotation (handles Optional/X|None)."""
    if isinstance(ft, type) and hasattr(ft, "__dataclass_fields__"):
        return ft
    if isinstance(ft, types.UnionType) or getattr(ft, "__origin__", None) is typing.Union:
        args = [a for a in ft.__args__ if a is not type(None)]
        if len(args) == 1 and isinstance(args[0], type) and hasattr(args[0], "__dataclass_fields__"):
            return args[0]
    return None


def _build_nested(cls: type, data: dict[str, Any]) -> Any:
    """Construct a frozen dataclass, recursively building nested dataclass fields."""
    if not isinstance(data, dict):
        return data
    field_types = {f.name: f.type for f in cls.__dataclass_fields__.values()}
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key not in field_types:
            continue
        ft = field_types[key]
        # Resolve string annotations to actual types in the module scope
        if isinstance(ft, str):
            ft = eval(ft, globals(), {cls.__name__: cls})  # noqa: S307
        dc_type = _get_dataclass_type(ft)
        if dc_type is not None and isinstance(value, dict):
            kwargs[key] = _build_nested(dc_type, value)
        else:
            kwargs[key] = value
    return cls(**kwargs)


def _coerce_scalar(name: str, annotation: str, value: Any) -> Any:
    """Convert a scalar read from YAML or ${ENV} to the declared field type."""
    if annotation == "int":
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        try:
            return int(str(value).strip())
        except ValueError:
            raise ConfigError(f"{name} must be an integer, got {value!r}") from None
    if annotation == "bool" and not isinstance(value, bool):
        text = str(value).strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        raise ConfigError(f"{name} must be true or false, got {value!r}")
    if annotation == "str" and value is not None and not isinstance(value, str):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        raise ConfigError(f"{name} must be a string, got {value!r}")
    return value


def coerce_types(config: AppConfig) -> AppConfig:
    """Coerce every section's scalar fields, so ``port: "${PORT}"`` becomes an int."""
    sections = {}
    for section in dataclasses.fields(config):
        current = getattr(config, section.name)
        changes = {}
        for f in dataclasses.fields(current):
            value = getattr(current, f.name)
            coerced = _coerce_scalar(f"{section.name}.{f.name}", f.type, value)
            if coerced is not value:
                changes[f.name] = coerced
        if changes:
            sections[section.name] = replace(current, **changes)
    return replace(config, **sections) if sections else config


def normalize(config: AppConfig) -> AppConfig:
    """Apply derived defaults: the application name is always lower-case."""
    eureka = config.eureka
    app = (eureka.app or "server").strip().lower()
    if app != eureka.app:
        config = replace(config, eureka=replace(eureka, app=app))
    return config


def load_config(path: str | Path) -> AppConfig:
    """Load and validate configuration from a YAML file."""
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Configuration file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ConfigError("Configuration file must be a YAML mapping")

    raw = _walk_and_interpolate(raw)
    try:
        config = _build_nested(AppConfig, raw)
    except TypeError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
    config = normalize(coerce_types(config))
    validate(config)
    return config


def validate(config: AppConfig) -> None:
    """Validate configuration values."""
    eureka = config.eureka

    endpoints = eureka.endpoints
    if not endpoints:
        raise ConfigError("eureka.default_zone must list at least one registry URL")
    for url in endpoints:
        if urlsplit(url).scheme not in ("http", "https"):
            raise ConfigError(f"eureka.default_zone entry is not an http(s) URL: {url}")

    if not 1 <= eureka.port <= 65535:
        raise ConfigError("eureka.port must be between 1 and 65535")

    if eureka.renewal_interval_seconds < 1:
        raise ConfigError("eureka.renewal_interval_seconds must be >= 1")

    if eureka.registry_fetch_interval_seconds < 1:
        raise ConfigError("eureka.registry_fetch_interval_seconds must be >= 1")

    if eureka.registration_backoff_seconds < 0:
        raise ConfigError("eureka.registration_backoff_seconds must be >= 0")

    if config.dispatch.timeout < 1:
        raise ConfigError("dispatch.timeout must be >= 1")

    if config.dispatch.strategy not in DEFAULT_STRATEGIES:
        raise ConfigError(
            f"dispatch.strategy must be one of {', '.join(sorted(DEFAULT_STRATEGIES))}, "
            f"got '{config.dispatch.strategy}'"
        )

    if config.logging.format not in ("json", "text"):
        raise ConfigError("logging.format must be 'json' or 'text'")
