"""Environment variable helpers for configuration files.

Supports ``${VAR}`` and ``${VAR:-default}`` references in raw YAML text so
secrets such as the target host or SSH password never live in the file.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

from dotenv import load_dotenv

from hostdeploy.lib.errors import ConfigError

ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def get_env_var(name: str, default: str | None = None) -> str | None:
    """Return an environment variable, or the default when unset or empty."""
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value


def substitute_env_vars(text: str) -> str:
    """Replace ``${VAR}`` and ``${VAR:-default}`` references in text.

    Args:
        text: Raw text, typically a YAML document

    Returns:
        Text with every reference resolved

    Raises:
        ConfigError: If a referenced variable is unset and has no default
    """

    def _replace(match: re.Match[str]) -> str:
        name, default = match.group(1), match.group(2)
        value = get_env_var(name, default)
        if value is None:
            raise ConfigError(
                name,
                f"Environment variable '{name}' is not set. "
                f"Export it or use ${{{name}:-default}}.",
            )
        return value

    return ENV_VAR_PATTERN.sub(_replace, text)


def load_env_file(path: Path | str | None = None) -> bool:
    """Load a ``.env`` file without overriding variables already set.

    Args:
        path: Path to the env file; defaults to ``.env`` in the working directory

    Returns:
        True if a file was found and loaded
    """
    env_path = Path(path) if path is not None else Path.cwd() / ".env"
    if not env_path.is_file():
        return False
    return load_dotenv(env_path, override=False)
