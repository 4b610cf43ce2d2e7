"""Deployment orchestration: the deploy state machine for one target.

``init → detect_mode → (fresh: install_prerequisites) → backup →
sync_artifacts → restart_services → verify → {success | rollback}``

Every run ends in exactly one ``DeploymentOutcome``. Stage failures, and a
target that cannot be reached to take the lock, are converted into outcomes;
only plan errors, lock conflicts and unknown rollback snapshots are raised,
and all of them happen before anything on the target changes.
"""

from __future__ import annotations

import shlex
from contextlib import ExitStack
from types import TracebackType

from hostdeploy.deploy.artifacts import ArtifactSync
from hostdeploy.deploy.executor import RemoteExecutor, create_executor
from hostdeploy.deploy.health import HealthProbe, create_backoff
from hostdeploy.deploy.lock import CancellationToken, TargetLock
from hostdeploy.deploy.migrations import MigrationRunner
from hostdeploy.deploy.prerequisites import PrerequisiteInstaller
from hostdeploy.deploy.rollback import RollbackManager, RollbackResult
from hostdeploy.deploy.services import ServiceController
from hostdeploy.deploy.snapshots import SnapshotStore
from hostdeploy.deploy.stages import StageRecorder
from hostdeploy.lib.errors import (
    DeploymentCancelledError,
    HostDeployError,
    TransportError,
)
from hostdeploy.lib.logging_config import get_logger
from hostdeploy.models.config import DeployConfig
from hostdeploy.models.outcome import (
    DeploymentMode,
    DeploymentOutcome,
    Operation,
    OutcomeStatus,
    Stage,
    StageStatus,
    utcnow,
)
from hostdeploy.models.plan import Component, DeploymentPlan
from hostdeploy.models.service import ServiceSpec
from hostdeploy.models.snapshot import Snapshot

logger = get_logger(__name__)

# A failure in these stages leaves the new code live, so it is rolled back
ROLLBACK_STAGES = frozenset({Stage.RESTART_SERVICES, Stage.VERIFY})


class DeployRun:
    """Mutable state of one deploy run."""

    def __init__(self, plan: DeploymentPlan, cancel_token: CancellationToken) -> None:
        self.plan = plan
        self.recorder = StageRecorder(cancel_token)
        self.started_at = utcnow()
        self.mode: DeploymentMode | None = None
        self.backup_id: str | None = None
        self.pruned: list[str] = []


class DeploymentOrchestrator:
    """Runs deploys and rollbacks against a single target.

    Collaborators default to ones built from the configuration and can be
    injected for testing.

    Example:
        >>> with build_orchestrator(config) as orchestrator:
        ...     outcome = orchestrator.deploy(DeploymentPlan())
        ...     print(outcome.status)
    """

    def __init__(
        self,
        config: DeployConfig,
        executor: RemoteExecutor,
        *,
        services: ServiceController | None = None,
        snapshots: SnapshotStore | None = None,
        probe: HealthProbe | None = None,
        artifacts: ArtifactSync | None = None,
        migrations: MigrationRunner | None = None,
        lock: TargetLock | None = None,
    ) -> None:
        self.config = config
        self.executor = executor
        timeout = config.timeouts.command
        self.services = services or ServiceController(executor, config.services, timeout)
        self.snapshots = snapshots or SnapshotStore(executor, timeout=timeout)
        self.probe = probe or HealthProbe(
            executor,
            self.services,
            timeout=config.health.timeout,
            backoff=create_backoff(config.health.backoff),
        )
        self.artifacts = artifacts or ArtifactSync(executor, config.artifacts, timeout)
        if migrations is None and config.migrations is not None:
            migrations = MigrationRunner(executor, config.migrations, timeout)
        self.migrations = migrations
        self.lock = lock or TargetLock(executor, remote=config.lock.remote)
        self.rollback_manager = RollbackManager(
            self.snapshots,
            self.services,
            self.probe,
            artifacts=self.artifacts if config.artifacts.steps else None,
            max_health_attempts=config.health.max_attempts,
        )

    # Public API

    def deploy(
        self, plan: DeploymentPlan, cancel_token: CancellationToken | None = None
    ) -> DeploymentOutcome:
        """Deploy new code to the target.

        Args:
            plan: Validated deployment plan
            cancel_token: Checked before every stage

        Returns:
            The terminal outcome of the run

        Raises:
            AlreadyInProgressError: If another run holds the target's lock
        """
        run = DeployRun(plan, cancel_token or CancellationToken())
        logger.info(
            f"Deploying {plan.components.value} to {self.config.target.identity}"
        )
        with ExitStack() as stack:
            try:
                stack.enter_context(self.lock.hold())
            except TransportError as exc:
                run.recorder.fail(Stage.INIT, exc, "lock not acquired")
                return self._outcome(run, OutcomeStatus.FAILED_NO_ROLLBACK)
            try:
                return self._deploy(run)
            finally:
                if run.backup_id is not None:
                    self.snapshots.unpin(run.backup_id)

    def rollback(
        self,
        snapshot_id: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> DeploymentOutcome:
        """Restore a snapshot (default: the newest backup).

        Raises:
            AlreadyInProgressError: If another run holds the target's lock
            SnapshotNotFoundError: If the snapshot does not exist
        """
        started_at = utcnow()
        with ExitStack() as stack:
            try:
                stack.enter_context(self.lock.hold())
            except TransportError as exc:
                recorder = StageRecorder(cancel_token)
                recorder.fail(Stage.INIT, exc, "lock not acquired")
                return self.rollback_manager.outcome(
                    recorder, RollbackResult(), started_at
                )
            return self.rollback_manager.rollback_to(snapshot_id, cancel_token)

    def list_snapshots(self) -> list[Snapshot]:
        """Return the target's snapshots, newest first."""
        return list(self.snapshots.list())

    def close(self) -> None:
        self.executor.close()

    def __enter__(self) -> DeploymentOrchestrator:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    # State machine

    def _deploy(self, run: DeployRun) -> DeploymentOutcome:
        recorder = run.recorder
        try:
            with recorder.stage(Stage.INIT) as ctx:
                ctx.detail = self.config.target.identity
                ctx.data["components"] = run.plan.components.value

            with recorder.stage(Stage.DETECT_MODE) as ctx:
                mode = run.mode = self._detect_mode()
                ctx.detail = mode.value

            if mode == DeploymentMode.FRESH:
                with recorder.stage(Stage.INSTALL_PREREQUISITES) as ctx:
                    ctx.detail = self._install_prerequisites(run.plan)
            else:
                recorder.skip(Stage.INSTALL_PREREQUISITES, "existing deployment")

            self._backup(run)

            with recorder.stage(Stage.SYNC_ARTIFACTS) as ctx:
                ctx.detail = self._sync_artifacts(run.plan, mode, ctx.data)

            with recorder.stage(Stage.RESTART_SERVICES) as ctx:
                restarted = self._restart_services(run.plan)
                ctx.detail = ", ".join(s.name for s in restarted) or "no services"

            if run.plan.skip_health_check:
                recorder.skip(Stage.VERIFY, "health check skipped; assumed healthy")
            else:
                with recorder.stage(Stage.VERIFY) as ctx:
                    ctx.detail = self.rollback_manager.verify(
                        restarted, run.plan.max_health_attempts
                    )
        except Exception as exc:  # noqa: BLE001
            if isinstance(exc, DeploymentCancelledError) or (
                recorder.failed_stage in ROLLBACK_STAGES
            ):
                return self._roll_back(run)
            return self._outcome(run, OutcomeStatus.FAILED_NO_ROLLBACK)

        logger.info(f"Deployment to {self.config.target.identity} succeeded")
        return self._outcome(run, OutcomeStatus.SUCCEEDED)

    def _detect_mode(self) -> DeploymentMode:
        root = self.config.target.deploy_root
        result = self.executor.execute(f"test -d {shlex.quote(root)}", check=False)
        return DeploymentMode.UPDATE if result.ok else DeploymentMode.FRESH

    def _install_prerequisites(self, plan: DeploymentPlan) -> str:
        installer = PrerequisiteInstaller(
            self.executor,
            self.config.prerequisites,
            attempts=plan.prerequisite_attempts,
            disk_warn_percent=self.config.disk_warn_percent,
            timeout=self.config.timeouts.command,
        )
        return installer.ensure().summary()

    def _backup(self, run: DeployRun) -> None:
        if run.mode == DeploymentMode.FRESH:
            run.recorder.skip(Stage.BACKUP, "fresh deployment; nothing to back up")
            return
        if run.plan.skip_backup:
            logger.warning("Backup skipped by plan; this run cannot be rolled back")
            run.recorder.skip(Stage.BACKUP, "skipped by plan")
            return

        with run.recorder.stage(Stage.BACKUP) as ctx:
            label = run.plan.label or self.artifacts.current_revision()
            snapshot = self.snapshots.create(
                self.config.target.deploy_root, label=label
            )
            run.backup_id = snapshot.id
            self.snapshots.pin(snapshot.id)
            ctx.detail = snapshot.id
            ctx.data["snapshot_id"] = snapshot.id
            run.pruned = self._prune()
            if run.pruned:
                ctx.data["pruned"] = list(run.pruned)

    def _prune(self) -> list[str]:
        try:
            report = self.snapshots.prune(self.config.retention)
        except HostDeployError as exc:
            logger.warning(f"Snapshot pruning failed: {exc}")
            return []
        return report.deleted

    def _sync_artifacts(
        self, plan: DeploymentPlan, mode: DeploymentMode, data: dict
    ) -> str:
        self.artifacts.sync(mode)
        steps = self.artifacts.build(plan.components)
        data["build_steps"] = steps

        detail = f"{len(steps)} build step(s)"
        if self.migrations is not None and plan.components.includes(
            Component.BACKEND
        ):
            applied = self.migrations.apply()
            data["migrations"] = applied
            detail += f", {len(applied)} migration(s)"
        return detail

    def _restart_services(self, plan: DeploymentPlan) -> list[ServiceSpec]:
        restarted = []
        for service in self.services.services:
            if not plan.components.includes(service.component):
                continue
            self.services.restart(service.name)
            restarted.append(service)
        return restarted

    def _roll_back(self, run: DeployRun) -> DeploymentOutcome:
        recorder = run.recorder
        if run.backup_id is None:
            logger.error("No backup was taken by this run; rollback is impossible")
            recorder.record(
                Stage.ROLLBACK, StageStatus.SKIPPED, "no backup from this run"
            )
            return self._outcome(run, OutcomeStatus.FAILED_NO_ROLLBACK)

        logger.warning(f"Rolling back to this run's backup {run.backup_id}")
        result = self.rollback_manager.run(
            run.backup_id, recorder, run.plan.components, cancellable=False
        )
        recorder.record(
            Stage.ROLLBACK,
            StageStatus.SUCCEEDED if result.succeeded else StageStatus.FAILED,
            run.backup_id,
            {"safety_snapshot_id": result.safety_snapshot_id},
        )
        status = (
            OutcomeStatus.ROLLED_BACK
            if result.succeeded
            else OutcomeStatus.FAILED_NO_ROLLBACK
        )
        return self._outcome(
            run,
            status,
            rollback_snapshot_id=result.snapshot_id,
            safety_snapshot_id=result.safety_snapshot_id,
        )

    def _outcome(
        self,
        run: DeployRun,
        status: OutcomeStatus,
        rollback_snapshot_id: str | None = None,
        safety_snapshot_id: str | None = None,
    ) -> DeploymentOutcome:
        recorder = run.recorder
        return DeploymentOutcome(
            status=status,
            operation=Operation.DEPLOY,
            target=self.config.target.name,
            mode=run.mode,
            backup_snapshot_id=run.backup_id,
            rollback_snapshot_id=rollback_snapshot_id,
            safety_snapshot_id=safety_snapshot_id,
            failed_stage=recorder.failed_stage,
            error_kind=recorder.error_kind,
            error_message=recorder.error_message,
            stages=tuple(recorder.results),
            pruned_snapshots=tuple(run.pruned),
            started_at=run.started_at,
        )


def build_orchestrator(config: DeployConfig) -> DeploymentOrchestrator:
    """Create an orchestrator with an executor for the configured target."""
    executor = create_executor(
        config.target,
        command_timeout=config.timeouts.command,
        connect_timeout=config.timeouts.connect,
    )
    return DeploymentOrchestrator(config, executor)
