"""Install the software a fresh host needs before the first deploy."""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field

from hostdeploy.config.defaults import DISK_USAGE_WARN_PERCENT
from hostdeploy.deploy.executor import RemoteExecutor
from hostdeploy.lib.errors import PrerequisiteError, TransportError
from hostdeploy.lib.logging_config import get_logger
from hostdeploy.models.config import Prerequisite

logger = get_logger(__name__)


@dataclass
class PrerequisiteReport:
    """What the installer found and did."""

    present: list[str] = field(default_factory=list)
    installed: list[str] = field(default_factory=list)
    disk_usage_percent: int | None = None

    def summary(self) -> str:
        parts = []
        if self.present:
            parts.append(f"present: {', '.join(self.present)}")
        if self.installed:
            parts.append(f"installed: {', '.join(self.installed)}")
        if self.disk_usage_percent is not None:
            parts.append(f"disk usage {self.disk_usage_percent}%")
        return "; ".join(parts) or "nothing to check"


class PrerequisiteInstaller:
    """Checks each prerequisite, installs it when missing, then re-checks.

    Each install command is tried up to ``attempts`` times.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        prerequisites: list[Prerequisite],
        attempts: int = 1,
        disk_warn_percent: int = DISK_USAGE_WARN_PERCENT,
        timeout: float | None = None,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self._executor = executor
        self._prerequisites = prerequisites
        self._attempts = attempts
        self._disk_warn_percent = disk_warn_percent
        self._timeout = timeout

    def ensure(self) -> PrerequisiteReport:
        """Make every configured prerequisite available.

        Raises:
            PrerequisiteError: If a prerequisite is still missing after installing
        """
        report = PrerequisiteReport()
        for prerequisite in self._prerequisites:
            if self._present(prerequisite):
                logger.info(f"Prerequisite {prerequisite.name}: present")
                report.present.append(prerequisite.name)
                continue

            if not prerequisite.install:
                raise PrerequisiteError(
                    prerequisite.name, "not installed and no install commands given"
                )
            logger.info(f"Prerequisite {prerequisite.name}: installing")
            for command in prerequisite.install:
                self._run_with_attempts(prerequisite.name, command)

            if not self._present(prerequisite):
                raise PrerequisiteError(
                    prerequisite.name, f"check still fails: {prerequisite.check}"
                )
            report.installed.append(prerequisite.name)

        report.disk_usage_percent = self.check_disk_usage()
        return report

    def check_disk_usage(self, path: str = "/") -> int | None:
        """Return the usage percent of ``path``'s filesystem, warning when high."""
        try:
            result = self._executor.execute(
                f"df -P {shlex.quote(path)} | awk 'NR==2 {{print $5}}'", check=False
            )
        except TransportError as exc:
            logger.warning(f"Could not read disk usage: {exc.message}")
            return None
        try:
            percent = int(result.stdout.strip().rstrip("%"))
        except ValueError:
            return None
        if percent > self._disk_warn_percent:
            logger.warning(
                f"Disk usage on {self._executor.target.host} is {percent}% "
                f"(threshold {self._disk_warn_percent}%)"
            )
        return percent

    def _present(self, prerequisite: Prerequisite) -> bool:
        result = self._executor.execute(
            prerequisite.check, timeout=self._timeout, check=False
        )
        return result.ok

    def _run_with_attempts(self, name: str, command: str) -> None:
        last_error: TransportError | None = None
        for attempt in range(1, self._attempts + 1):
            try:
                self._executor.execute(command, timeout=self._timeout)
                return
            except TransportError as exc:
                last_error = exc
                logger.warning(
                    f"Installing {name} failed (attempt {attempt}/{self._attempts}): "
                    f"{exc.message}"
                )
        assert last_error is not None  # nosec B101
        raise PrerequisiteError(name, last_error.message) from last_error
