"""hostdeploy - Deploy, verify and roll back applications on a single host.

A deploy run, start to finish:

- Snapshot the current deployment before changing anything
- Sync code from git, build it, and apply migrations
- Restart PM2, systemd or custom services
- Verify with HTTP or process health checks, rolling back on failure
"""

from hostdeploy.config.loader import ConfigLoader
from hostdeploy.lib.errors import ConfigError, HostDeployError

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "ConfigLoader",
    "ConfigError",
    "HostDeployError",
]
