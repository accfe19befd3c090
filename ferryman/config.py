"""Configuration management for Ferryman."""

from __future__ import annotations

import copy
import ipaddress
import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from .exceptions import ConfigException
from .logger import DEFAULT_LOGGING_CONFIG

# Default configuration schema
DEFAULT_CONFIG: dict[str, Any] = {
    "server": {"host": "127.0.0.1", "port": 3001},
    "ssrf": {
        "allow_ipv6": True,
        "autodetect_local_addresses": False,
        "ip_blacklist": [],
        "ip_whitelist": [],
        "hostname_blacklist": [],
    },
    "fetch": {
        "timeout_seconds": 15.0,
        "max_redirects": 5,
        "max_response_bytes": 20971520,  # 20MB
        "user_agent": None,
    },
    "cache": {
        "enabled": True,
        "max_entries": 1000,
        "max_entry_bytes": 10485760,  # 10MB
        "cleanup_interval_seconds": 60,
        "ttl": {"html": 300, "static": 3600, "json": 120, "default": 300},
    },
    "cookies": {"enabled": True, "cleanup_interval_seconds": 300},
    "rate_limit": {
        "enabled": True,
        "window_seconds": 60,
        "max_requests": 100,
        "authenticated_max_requests": 1000,
        "exempt_paths": ["/api/proxy/ping"],
        "trust_forwarded_for": True,
        "user_header": "X-Authenticated-User",
    },
    "logging": dict(DEFAULT_LOGGING_CONFIG),
}

# Environment variables that override configuration, mapped to a dotted key
# path and a converter.
ENV_OVERRIDES: dict[str, tuple[str, Any]] = {
    "PORT": ("server.port", int),
    "FERRYMAN_PORT": ("server.port", int),
    "FERRYMAN_HOST": ("server.host", str),
    "FERRYMAN_LOG_LEVEL": ("logging.level", str),
    "RATE_LIMIT_WINDOW_MS": ("rate_limit.window_seconds", lambda v: int(v) / 1000),
    "RATE_LIMIT_MAX_REQUESTS": ("rate_limit.max_requests", int),
}

_NUMBER = (int, float)


def deep_merge(base: dict, override: Mapping) -> dict:
    """Recursively merge two dictionaries."""
    result = copy.deepcopy(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, Mapping):
            result[k] = deep_merge(result[k], v)
        else:
            result[k] = copy.deepcopy(v)
    return result


def set_path(config: dict, key_path: str, value: Any) -> None:
    """Set a value at a dotted key path (e.g. ``"server.port"``)."""
    keys = key_path.split(".")
    d = config
    for k in keys[:-1]:
        if k not in d or not isinstance(d[k], dict):
            d[k] = {}
        d = d[k]
    d[keys[-1]] = value


def env_overrides(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Collect configuration overrides from environment variables.

    Values that fail to convert raise ConfigException naming the variable.
    """
    environ = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}
    for name, (key_path, convert) in ENV_OVERRIDES.items():
        raw = environ.get(name)
        if raw is None or raw == "":
            continue
        try:
            set_path(overrides, key_path, convert(raw))
        except ValueError as e:
            raise ConfigException(f"Invalid value for {name}: {raw!r}") from e
    return overrides


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Load a JSON configuration file.

    Raises:
        ConfigException: If the file is missing or not valid JSON.
    """
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigException(f"Configuration file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigException(f"Invalid JSON in configuration file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigException(f"Configuration file {path} must contain a JSON object")
    return data


class ConfigurationValidator:
    """Validates configuration and provides error reporting."""

    @staticmethod
    def validate_config(config: dict) -> tuple[bool, list[str]]:
        errors: list[str] = []
        if not isinstance(config, dict):
            return False, ["Config must be a dictionary."]

        def check(section: str, key: str, types: Any, label: str, positive: bool = False) -> None:
            value = config.get(section, {}).get(key)
            if isinstance(value, bool) and bool not in (types if isinstance(types, tuple) else (types,)):
                errors.append(f"{section}.{key} must be {label}.")
            elif not isinstance(value, types):
                errors.append(f"{section}.{key} must be {label}.")
            elif positive and value <= 0:
                errors.append(f"{section}.{key} must be positive.")

        # Validate server
        check("server", "host", str, "a string")
        check("server", "port", int, "an integer")
        port = config.get("server", {}).get("port")
        if isinstance(port, int) and not isinstance(port, bool) and not 0 <= port <= 65535:
            errors.append("server.port must be between 0 and 65535.")

        # Validate ssrf
        check("ssrf", "allow_ipv6", bool, "a boolean")
        check("ssrf", "autodetect_local_addresses", bool, "a boolean")
        for key in ("ip_blacklist", "ip_whitelist"):
            networks = config.get("ssrf", {}).get(key)
            if not isinstance(networks, list):
                errors.append(f"ssrf.{key} must be a list.")
                continue
            for network in networks:
                try:
                    ipaddress.ip_network(network)
                except (TypeError, ValueError):
                    errors.append(f"ssrf.{key} contains an invalid network: {network!r}")
        if not isinstance(config.get("ssrf", {}).get("hostname_blacklist"), list):
            errors.append("ssrf.hostname_blacklist must be a list.")

        # Validate fetch
        check("fetch", "timeout_seconds", _NUMBER, "a number", positive=True)
        check("fetch", "max_redirects", int, "an integer")
        redirects = config.get("fetch", {}).get("max_redirects")
        if isinstance(redirects, int) and redirects < 0:
            errors.append("fetch.max_redirects must not be negative.")
        check("fetch", "max_response_bytes", int, "an integer", positive=True)
        user_agent = config.get("fetch", {}).get("user_agent")
        if user_agent is not None and not isinstance(user_agent, str):
            errors.append("fetch.user_agent must be a string or None.")

        # Validate cache
        check("cache", "enabled", bool, "a boolean")
        check("cache", "max_entries", int, "an integer", positive=True)
        check("cache", "max_entry_bytes", int, "an integer", positive=True)
        check("cache", "cleanup_interval_seconds", _NUMBER, "a number", positive=True)
        ttl = config.get("cache", {}).get("ttl")
        if not isinstance(ttl, dict):
            errors.append("cache.ttl must be a dictionary.")
        else:
            for category, seconds in ttl.items():
                if isinstance(seconds, bool) or not isinstance(seconds, int) or seconds < 0:
                    errors.append(f"cache.ttl.{category} must be a non-negative integer.")

        # Validate cookies
        check("cookies", "enabled", bool, "a boolean")
        check("cookies", "cleanup_interval_seconds", _NUMBER, "a number", positive=True)

        # Validate rate_limit
        check("rate_limit", "enabled", bool, "a boolean")
        check("rate_limit", "window_seconds", _NUMBER, "a number", positive=True)
        check("rate_limit", "max_requests", int, "an integer", positive=True)
        check("rate_limit", "authenticated_max_requests", int, "an integer", positive=True)
        check("rate_limit", "trust_forwarded_for", bool, "a boolean")
        if not isinstance(config.get("rate_limit", {}).get("exempt_paths"), list):
            errors.append("rate_limit.exempt_paths must be a list.")
        user_header = config.get("rate_limit", {}).get("user_header")
        if user_header is not None and not isinstance(user_header, str):
            errors.append("rate_limit.user_header must be a string or None.")

        # Validate logging
        check("logging", "level", str, "a string")
        check("logging", "format", str, "a string")
        check("logging", "date_format", str, "a string")
        check("logging", "enable_console", bool, "a boolean")
        check("logging", "enable_file", bool, "a boolean")
        check("logging", "max_file_size", int, "an integer")
        check("logging", "backup_count", int, "an integer")
        logging_cfg = config.get("logging", {})
        for key in ("parent_logger", "file_path"):
            if logging_cfg.get(key) is not None and not isinstance(logging_cfg.get(key), str):
                errors.append(f"logging.{key} must be a string or None.")

        return len(errors) == 0, errors

    @staticmethod
    def merge_with_defaults(user_config: Mapping) -> dict:
        return deep_merge(DEFAULT_CONFIG, user_config)


class ConfigurationManager:
    """Manages configuration, validation, merging, and runtime updates."""

    def __init__(
        self,
        user_config: Mapping | None = None,
        use_env: bool = False,
        overrides: Mapping | None = None,
    ) -> None:
        """Load and validate a configuration.

        Precedence, lowest first: DEFAULT_CONFIG, ``user_config``, the
        environment (when ``use_env``), ``overrides``.

        Args:
            user_config: Partial configuration merged over DEFAULT_CONFIG.
            use_env: Whether environment variables override the result.
            overrides: Partial configuration applied last, e.g. from
                command-line flags.
        """
        self.use_env = use_env
        self.overrides = dict(overrides or {})
        self._config = self.load_config(user_config or {})

    def load_config(self, user_config: Mapping) -> dict:
        merged = ConfigurationValidator.merge_with_defaults(user_config)
        if self.use_env:
            merged = deep_merge(merged, env_overrides())
        if self.overrides:
            merged = deep_merge(merged, self.overrides)
        valid, errors = ConfigurationValidator.validate_config(merged)
        if not valid:
            raise ConfigException(f"Invalid configuration: {errors}")
        return merged

    @property
    def config(self) -> dict:
        return self._config

    def section(self, name: str) -> dict:
        return self._config.get(name, {})

    def update(self, key_path: str, value: Any) -> None:
        """Update a config value at a dotted key path (e.g., 'server.host')."""
        candidate = copy.deepcopy(self._config)
        set_path(candidate, key_path, value)
        valid, errors = ConfigurationValidator.validate_config(candidate)
        if not valid:
            raise ConfigException(f"Invalid configuration after update: {errors}")
        self._config = candidate

    def reload(self, new_config: Mapping) -> None:
        self._config = self.load_config(new_config)
