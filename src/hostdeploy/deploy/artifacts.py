"""Bring new application code onto the target and build it."""

from __future__ import annotations

import posixpath
import shlex

from hostdeploy.deploy.executor import RemoteExecutor
from hostdeploy.lib.errors import ArtifactSyncError, TransportError
from hostdeploy.lib.logging_config import get_logger
from hostdeploy.models.config import ArtifactConfig, BuildStep
from hostdeploy.models.outcome import DeploymentMode
from hostdeploy.models.plan import ComponentSelection

logger = get_logger(__name__)


class ArtifactSync:
    """Syncs the configured git repository into the deployment root.

    A fresh deploy clones the branch; an update fetches it and hard-resets
    the working tree, discarding local edits on the host. Build steps then
    run in configuration order, filtered by the plan's components.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        config: ArtifactConfig,
        timeout: float | None = None,
    ) -> None:
        self._executor = executor
        self._config = config
        self._timeout = timeout
        self._root = executor.target.deploy_root

    def sync(self, mode: DeploymentMode) -> None:
        """Clone or update the repository.

        Raises:
            ArtifactSyncError: If git fails
        """
        root = shlex.quote(self._root)
        if not self._config.repository:
            logger.info("No repository configured; using code already on the target")
            if mode == DeploymentMode.FRESH:
                self._run("create root", f"mkdir -p {root}", self._timeout)
            return

        branch = shlex.quote(self._config.branch)
        if mode == DeploymentMode.FRESH:
            logger.info(f"Cloning {self._config.repository} ({self._config.branch})")
            command = (
                f"git clone --branch {branch} "
                f"{shlex.quote(self._config.repository)} {root}"
            )
            step = "git clone"
        else:
            logger.info(f"Updating {self._root} to origin/{self._config.branch}")
            command = (
                f"git -C {root} fetch origin {branch} "
                f"&& git -C {root} reset --hard origin/{branch}"
            )
            step = "git update"
        self._run(step, command, self._timeout)

    def build(self, components: ComponentSelection) -> list[str]:
        """Run the build steps that apply to the selected components.

        Returns:
            Names of the steps that ran

        Raises:
            ArtifactSyncError: On the first failing step
        """
        ran = []
        for step in self.steps_for(components):
            logger.info(f"Build step: {step.display_name}")
            self._run(step.display_name, self._step_command(step), step.timeout)
            ran.append(step.display_name)
        return ran

    def steps_for(self, components: ComponentSelection) -> list[BuildStep]:
        return [
            step
            for step in self._config.steps
            if step.component is None or components.includes(step.component)
        ]

    def current_revision(self) -> str | None:
        """Short git revision checked out in the deployment root, if any."""
        try:
            result = self._executor.execute(
                f"git -C {shlex.quote(self._root)} rev-parse --short HEAD",
                check=False,
            )
        except TransportError:
            return None
        revision = result.stdout.strip()
        return revision if result.ok and revision else None

    def _step_command(self, step: BuildStep) -> str:
        workdir = self._root
        if step.workdir:
            workdir = posixpath.join(self._root, step.workdir)
        return f"cd {shlex.quote(workdir)} && {step.command}"

    def _run(self, step: str, command: str, timeout: float | None) -> None:
        try:
            self._executor.execute(command, timeout=timeout or self._timeout)
        except TransportError as exc:
            raise ArtifactSyncError(step, exc.message) from exc
