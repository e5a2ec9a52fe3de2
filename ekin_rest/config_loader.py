"""Config Loader - Loads client profiles from YAML.

A profiles file maps names to ClientConfig fields:

    clients:
      orders:
        url: https://api.example.com/orders
        headers:
          Authorization: "Bearer ${ORDERS_TOKEN}"
        retry_count: 3
        sleep_between_retries: 0.5

${ENV_VAR} patterns in any string are replaced from the environment.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from ekin_rest.models import ClientConfig, ClientProfiles


class ConfigError(Exception):
    """Raised when configuration loading fails."""


_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def load_client_profiles(config_path: Path) -> dict[str, ClientConfig]:
    """Load all client profiles from YAML with ${ENV_VAR} substitution."""
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}") from e

    if not isinstance(raw_config, dict):
        raise ConfigError("Config file must be a YAML mapping")

    raw_config = _substitute_env_vars(raw_config)

    try:
        return ClientProfiles.model_validate(raw_config).clients
    except ValidationError as e:
        raise ConfigError(f"Invalid config structure: {e}") from e


def load_client_config(config_path: Path, name: str) -> ClientConfig:
    """Load one named client profile."""
    profiles = load_client_profiles(config_path)
    if name not in profiles:
        available = ", ".join(profiles.keys()) or "(none)"
        raise ConfigError(f"Client '{name}' not found in config. Available: {available}")
    return profiles[name]


def _substitute_env_vars(data: Any, key_path: str = "") -> Any:
    """Replace ${ENV_VAR} patterns in every string within data.

    ``key_path`` locates ``data`` in the file (e.g. "clients.orders.headers")
    and is reported when a variable is missing.
    """
    if isinstance(data, str):
        return _expand(data, key_path)
    if isinstance(data, dict):
        return {
            key: _substitute_env_vars(value, f"{key_path}.{key}" if key_path else str(key))
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [_substitute_env_vars(item, f"{key_path}[{i}]") for i, item in enumerate(data)]
    return data


def _expand(text: str, key_path: str) -> str:
    missing = [name for name in _ENV_VAR_PATTERN.findall(text) if name not in os.environ]
    if missing:
        raise ConfigError(f"Environment variable '{missing[0]}' is not set (used by {key_path})")
    return _ENV_VAR_PATTERN.sub(lambda match: os.environ[match.group(1)], text)
