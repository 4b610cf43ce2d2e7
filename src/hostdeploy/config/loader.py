"""Configuration loader for hostdeploy.

This module provides the ConfigLoader class for loading, parsing, and
validating deployment configuration from YAML files.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from hostdeploy.config.defaults import DEFAULT_CONFIG_FILENAMES
from hostdeploy.config.env_loader import load_env_file, substitute_env_vars
from hostdeploy.config.validator import flatten_pydantic_errors
from hostdeploy.lib.errors import ConfigError
from hostdeploy.models.config import DeployConfig

logger = logging.getLogger(__name__)

# Environment variable to (section, field) mapping
ENV_VAR_MAP: dict[str, tuple[str, ...]] = {
    "HOSTDEPLOY_COMMAND_TIMEOUT": ("timeouts", "command"),
    "HOSTDEPLOY_CONNECT_TIMEOUT": ("timeouts", "connect"),
    "HOSTDEPLOY_HEALTH_MAX_ATTEMPTS": ("health", "max_attempts"),
    "HOSTDEPLOY_HEALTH_TIMEOUT": ("health", "timeout"),
    "HOSTDEPLOY_HEALTH_DELAY": ("health", "backoff", "delay"),
    "HOSTDEPLOY_RETENTION_KEEP": ("retention", "keep"),
    "HOSTDEPLOY_HISTORY_PATH": ("history", "path"),
}

_INT_FIELDS = {"max_attempts", "keep"}
_FLOAT_FIELDS = {"command", "connect", "timeout", "delay"}


def _parse_env_value(field_name: str, value: str) -> Any:
    """Parse an environment variable value to the field's type.

    Raises:
        ValueError: If value cannot be parsed
    """
    if field_name in _INT_FIELDS:
        return int(value)
    if field_name in _FLOAT_FIELDS:
        return float(value)
    return value


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> None:
    """Deep merge override dict into base dict (in-place).

    For nested dicts, merging is recursive.
    For other types, override completely replaces base.
    """
    for key, override_value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(override_value, dict)
        ):
            _deep_merge(base[key], override_value)
        else:
            base[key] = override_value


def _env_overrides(env_vars: os._Environ[str] | dict[str, str]) -> dict[str, Any]:
    """Build a nested config dict from HOSTDEPLOY_* environment variables.

    Unparseable values are logged and ignored.
    """
    overrides: dict[str, Any] = {}
    for env_name, path in ENV_VAR_MAP.items():
        raw = env_vars.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            value = _parse_env_value(path[-1], raw)
        except ValueError:
            logger.warning(f"Ignoring {env_name}={raw!r}: not a valid number")
            continue
        node = overrides
        for key in path[:-1]:
            node = node.setdefault(key, {})
        node[path[-1]] = value
    return overrides


def _read_yaml_with_env_substitution(path: Path) -> dict[str, Any] | None:
    """Read a YAML file with environment variable substitution.

    Raises:
        OSError: If file cannot be read
        yaml.YAMLError: If YAML parsing fails
        ConfigError: If env var substitution fails
    """
    raw_text = path.read_text(encoding="utf-8")
    substituted = substitute_env_vars(raw_text)
    content = yaml.safe_load(substituted)
    if content is not None and not isinstance(content, dict):
        raise ConfigError("yaml_parse", f"Expected a mapping at the top of {path}")
    return content if content else None


def resolve_config_path(config_path: str | None, search_dir: Path | None = None) -> Path:
    """Return the configuration file to load.

    Args:
        config_path: Explicit path, or None to search ``search_dir``
        search_dir: Directory searched for hostdeploy.yml|hostdeploy.yaml

    Raises:
        ConfigError: If no configuration file can be found
    """
    if config_path:
        path = Path(config_path)
        if not path.is_file():
            raise ConfigError("config_path", f"Configuration file not found: {path}")
        return path

    directory = search_dir or Path.cwd()
    for filename in DEFAULT_CONFIG_FILENAMES:
        candidate = directory / filename
        if candidate.is_file():
            return candidate

    raise ConfigError(
        "config_path",
        f"No configuration file found in {directory}. "
        f"Expected one of: {', '.join(DEFAULT_CONFIG_FILENAMES)}",
    )


class ConfigLoader:
    """Loads and validates deployment configuration from YAML files.

    This class handles:
    - Loading ``.env`` next to the configuration file
    - Parsing YAML with ``${VAR}`` substitution
    - Merging user defaults from ~/.hostdeploy/config.yaml
    - Applying HOSTDEPLOY_* environment overrides
    - Converting validation errors into human-readable messages

    Configuration precedence (highest to lowest):
    1. hostdeploy.yaml explicit settings
    2. Environment variables
    3. User defaults in ~/.hostdeploy/config.yaml
    """

    def __init__(
        self,
        env_vars: os._Environ[str] | dict[str, str] | None = None,
        user_config_dir: Path | None = None,
    ) -> None:
        """Initialize the loader.

        Args:
            env_vars: Environment mapping (defaults to os.environ)
            user_config_dir: Directory holding user defaults (defaults to ~/.hostdeploy)
        """
        self._env_vars = env_vars if env_vars is not None else os.environ
        self._user_config_dir = user_config_dir or Path.home() / ".hostdeploy"

    def load(self, config_path: str | Path) -> DeployConfig:
        """Load and validate a deployment configuration.

        Args:
            config_path: Path to hostdeploy.yaml

        Returns:
            Validated DeployConfig instance

        Raises:
            ConfigError: If the file is missing, unparseable or invalid
        """
        path = Path(config_path)
        load_env_file(path.parent / ".env")

        file_config = self._read(path, "config")
        if file_config is None:
            raise ConfigError("config", f"Configuration file is empty: {path}")

        merged: dict[str, Any] = {}
        user_config = self.load_user_config()
        if user_config:
            _deep_merge(merged, user_config)
        _deep_merge(merged, _env_overrides(self._env_vars))
        _deep_merge(merged, file_config)

        try:
            config = DeployConfig(**merged)
        except PydanticValidationError as e:
            error_text = "\n".join(flatten_pydantic_errors(e))
            raise ConfigError(
                "config_validation",
                f"Invalid configuration in {path}:\n{error_text}",
            ) from e

        logger.debug(
            f"Loaded configuration for target '{config.target.name}' "
            f"({config.target.identity}) from {path}"
        )
        return config

    def load_user_config(self) -> dict[str, Any] | None:
        """Load user-level defaults from config.yml|config.yaml, if present."""
        for filename in ("config.yml", "config.yaml"):
            candidate = self._user_config_dir / filename
            if candidate.is_file():
                return self._read(candidate, "user_config")
        return None

    def _read(self, path: Path, error_code: str) -> dict[str, Any] | None:
        try:
            return _read_yaml_with_env_substitution(path)
        except OSError as e:
            raise ConfigError(
                error_code,
                f"Configuration file not found at {path}. "
                f"Please ensure the file exists at this path.",
            ) from e
        except yaml.YAMLError as e:
            raise ConfigError(
                f"{error_code}_parse",
                f"Failed to parse YAML file {path}: {str(e)}",
            ) from e


def load_deploy_config(config_path: str | None = None) -> tuple[DeployConfig, Path]:
    """One-call helper for CLI commands.

    Returns:
        The validated configuration and the path it was loaded from
    """
    path = resolve_config_path(config_path)
    return ConfigLoader().load(path), path.resolve()
