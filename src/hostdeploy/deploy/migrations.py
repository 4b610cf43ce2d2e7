"""Forward-only database migrations.

Scripts are named with a numeric prefix (``001_create_users.sql``) and run
in numeric order. The runner keeps no record of what was applied; scripts
are expected to be idempotent (``CREATE TABLE IF NOT EXISTS`` and the like).
"""

from __future__ import annotations

import posixpath
import re
import shlex

from hostdeploy.deploy.executor import RemoteExecutor
from hostdeploy.lib.errors import MigrationError, TransportError
from hostdeploy.lib.logging_config import get_logger
from hostdeploy.models.config import MigrationConfig

logger = get_logger(__name__)


class MigrationRunner:
    """Discovers and applies migration scripts in a directory on the target."""

    def __init__(
        self,
        executor: RemoteExecutor,
        config: MigrationConfig,
        timeout: float | None = None,
    ) -> None:
        self._executor = executor
        self._config = config
        self._pattern = re.compile(config.pattern)
        self._timeout = config.timeout or timeout
        self.directory = posixpath.join(
            executor.target.deploy_root, config.directory
        )

    def pending(self) -> list[str]:
        """Return the scripts to apply, in numeric order.

        A missing directory means there is nothing to apply.
        """
        directory = shlex.quote(self.directory)
        result = self._executor.execute(
            f"if [ -d {directory} ]; then ls -1A {directory}; fi", check=False
        )
        scripts = []
        for name in result.stdout.splitlines():
            match = self._pattern.match(name.strip())
            if match:
                scripts.append((int(match.group(1)), name.strip()))
        return [name for _, name in sorted(scripts)]

    def apply(self) -> list[str]:
        """Run every script in order, stopping at the first failure.

        Returns:
            Scripts applied

        Raises:
            MigrationError: Naming the failing script and those applied before it
        """
        applied: list[str] = []
        for script in self.pending():
            path = posixpath.join(self.directory, script)
            command = self._config.command.replace("{path}", shlex.quote(path))
            logger.info(f"Applying migration {script}")
            try:
                self._executor.execute(command, timeout=self._timeout)
            except TransportError as exc:
                raise MigrationError(script, applied, exc.message) from exc
            applied.append(script)
        if not applied:
            logger.info("No migrations to apply")
        return applied
