"""Config Loader - loads task Options from YAML.

The file holds a base ``options`` mapping and optional named ``profiles``
whose fields override the base:

    options:
      connection_timeout_seconds: 10
      throw_exception_on_error_response: true
    profiles:
      partner-api:
        authentication: basic
        username: svc-partner
        password: ${PARTNER_API_PASSWORD}

Strings may reference environment variables as ${ENV_VAR}, so secrets stay
out of the file.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from http_tasks.errors import ConfigurationError
from http_tasks.models import Options

_ENV_VAR = re.compile(r"\$\{([^}]+)\}")


class ConfigError(ConfigurationError):
    """Raised when configuration loading fails."""


def load_options(config_path: Path, profile: str | None = None) -> Options:
    """Load Options from YAML with ${ENV_VAR} substitution.

    Args:
        config_path: YAML file to read.
        profile: Name of a profile under ``profiles`` to apply over ``options``.

    Raises:
        ConfigError: Missing file, invalid YAML, unknown profile, unset
            environment variable or invalid option values.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}") from e

    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ConfigError("Config file must be a YAML mapping")

    raw_options = _section(raw_config, "options")
    if profile is not None:
        profiles = _section(raw_config, "profiles")
        if profile not in profiles:
            available = ", ".join(profiles.keys()) or "none"
            raise ConfigError(f"Profile '{profile}' not found in config. Available: {available}")
        raw_options = {**raw_options, **_section(profiles, profile)}

    raw_options = _substitute_env_vars(raw_options)

    try:
        return Options.model_validate(raw_options)
    except ValidationError as e:
        raise ConfigError(f"Invalid options: {e}") from e


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be a YAML mapping")
    return value


def _substitute_env_vars(data: Any) -> Any:
    """Recursively substitute ${ENV_VAR} patterns in strings within data."""
    if isinstance(data, str):
        return _substitute_string(data)
    elif isinstance(data, dict):
        return {k: _substitute_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_vars(item) for item in data]
    return data


def _substitute_string(s: str) -> str:
    """Substitute ${ENV_VAR} patterns. Raises ConfigError if env var is not set."""

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        value = os.environ.get(var_name)
        if value is None:
            raise ConfigError(f"Environment variable '{var_name}' is not set")
        return value

    return _ENV_VAR.sub(replacer, s)
