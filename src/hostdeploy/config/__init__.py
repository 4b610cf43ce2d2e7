"""Configuration loading and validation for hostdeploy.

Main components:
- ConfigLoader (``hostdeploy.config.loader``): load and validate hostdeploy.yaml
- Environment variable substitution (``${VAR}`` and ``${VAR:-default}``)
- Validation utilities and default values

The loader is not re-exported here because the models import the defaults
module of this package.
"""

from hostdeploy.config.env_loader import get_env_var, load_env_file, substitute_env_vars

__all__ = [
    "get_env_var",
    "load_env_file",
    "substitute_env_vars",
]
