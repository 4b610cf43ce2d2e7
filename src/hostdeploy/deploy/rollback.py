"""Restore a target to a previous snapshot.

The rollback state machine is ``resolve_snapshot → safety_snapshot →
stop_services → restore → rebuild → start_services → verify``. The safety
snapshot of what the restore replaces is taken while services still run, so
a failure there leaves the target as it was. A failed rollback is never
followed by another automatic rollback: the operator gets the safety snapshot
id instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from hostdeploy.deploy.artifacts import ArtifactSync
from hostdeploy.deploy.health import HealthProbe
from hostdeploy.deploy.lock import CancellationToken
from hostdeploy.deploy.services import ServiceController
from hostdeploy.deploy.snapshots import SnapshotStore
from hostdeploy.deploy.stages import StageRecorder
from hostdeploy.lib.errors import HealthCheckError, SnapshotNotFoundError
from hostdeploy.lib.logging_config import get_logger
from hostdeploy.models.outcome import (
    DeploymentOutcome,
    Operation,
    OutcomeStatus,
    Stage,
    utcnow,
)
from hostdeploy.models.plan import ComponentSelection
from hostdeploy.models.service import ServiceSpec
from hostdeploy.models.snapshot import Snapshot

logger = get_logger(__name__)

LATEST = "latest"


@dataclass
class RollbackResult:
    """What one rollback attempt did."""

    snapshot_id: str | None = None
    safety_snapshot_id: str | None = None
    succeeded: bool = False


class RollbackManager:
    """Runs the rollback state machine for one target."""

    def __init__(
        self,
        snapshots: SnapshotStore,
        services: ServiceController,
        probe: HealthProbe,
        artifacts: ArtifactSync | None = None,
        max_health_attempts: int = 5,
    ) -> None:
        self._snapshots = snapshots
        self._services = services
        self._probe = probe
        self._artifacts = artifacts
        self._max_health_attempts = max_health_attempts

    def resolve(self, snapshot_ref: str | None) -> Snapshot:
        """Find the snapshot a reference names.

        ``None`` and ``"latest"`` mean the newest regular backup; safety
        snapshots are only restored when named explicitly.

        Raises:
            SnapshotNotFoundError: If no matching snapshot exists
        """
        if snapshot_ref is None or snapshot_ref == LATEST:
            snapshot = self._snapshots.latest()
            if snapshot is None:
                raise SnapshotNotFoundError(None)
            return snapshot
        return self._snapshots.get(snapshot_ref)

    def rollback_to(
        self,
        snapshot_ref: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> DeploymentOutcome:
        """Restore a snapshot and bring every service back up.

        Args:
            snapshot_ref: Snapshot id, ``"latest"`` or None (latest backup)
            cancel_token: Cancels the run if set before services are stopped

        Returns:
            Outcome with status ``rolled_back`` or ``failed_no_rollback``

        Raises:
            SnapshotNotFoundError: If the snapshot does not exist; nothing
                on the target has been touched
        """
        started_at = utcnow()
        snapshot = self.resolve(snapshot_ref)

        recorder = StageRecorder(cancel_token)
        result = self.run(snapshot, recorder, ComponentSelection.BOTH)
        return self.outcome(recorder, result, started_at)

    def outcome(
        self, recorder: StageRecorder, result: RollbackResult, started_at: datetime
    ) -> DeploymentOutcome:
        """Build the outcome of an operator-initiated rollback."""
        return DeploymentOutcome(
            status=(
                OutcomeStatus.ROLLED_BACK
                if result.succeeded
                else OutcomeStatus.FAILED_NO_ROLLBACK
            ),
            operation=Operation.ROLLBACK,
            target=self._snapshots.target.name,
            rollback_snapshot_id=result.snapshot_id,
            safety_snapshot_id=result.safety_snapshot_id,
            failed_stage=recorder.failed_stage,
            error_kind=recorder.error_kind,
            error_message=recorder.error_message,
            stages=tuple(recorder.results),
            started_at=started_at,
        )

    def run(
        self,
        snapshot: Snapshot | str,
        recorder: StageRecorder,
        components: ComponentSelection,
        cancellable: bool = True,
    ) -> RollbackResult:
        """Run the rollback stages, recording each on ``recorder``.

        Only resolution and the safety snapshot may be cancelled; once services
        are stopped the run always completes, and services are started again
        even when the restore fails. Failures are recorded, never raised.
        """
        result = RollbackResult()
        try:
            with recorder.stage(Stage.RESOLVE_SNAPSHOT, cancellable=cancellable) as ctx:
                if isinstance(snapshot, str):
                    snapshot = self._snapshots.get(snapshot)
                result.snapshot_id = snapshot.id
                ctx.detail = snapshot.id
                ctx.data["label"] = snapshot.label

            logger.warning(f"Rolling back {snapshot.source_path} to {snapshot.id}")
            with self._snapshots.pinned(snapshot.id):
                self._run_stages(snapshot, recorder, components, result, cancellable)
        except Exception:  # noqa: BLE001
            # already recorded on the stage that raised it
            return result

        result.succeeded = True
        logger.info(f"Rollback to {snapshot.id} succeeded")
        return result

    def _run_stages(
        self,
        snapshot: Snapshot,
        recorder: StageRecorder,
        components: ComponentSelection,
        result: RollbackResult,
        cancellable: bool,
    ) -> None:
        services = self._services.services

        with recorder.stage(Stage.SAFETY_SNAPSHOT, cancellable=cancellable) as ctx:
            safety = self._snapshots.safety_snapshot(snapshot.id, snapshot.source_path)
            if safety is not None:
                result.safety_snapshot_id = safety.id
                ctx.detail = safety.id
                logger.info(f"Safety snapshot {safety.id} holds the replaced state")
            else:
                ctx.detail = "nothing to preserve"

        with recorder.stage(Stage.STOP_SERVICES, cancellable=False) as ctx:
            for service in services:
                self._services.stop(service.name, tolerate_stopped=True)
            ctx.detail = ", ".join(s.name for s in services) or "no services"

        try:
            with recorder.stage(Stage.RESTORE, cancellable=False) as ctx:
                self._snapshots.restore(
                    snapshot.id, snapshot.source_path, take_safety=False
                )
                ctx.detail = f"{snapshot.id} -> {snapshot.source_path}"
                if result.safety_snapshot_id is not None:
                    ctx.data["safety_snapshot_id"] = result.safety_snapshot_id

            if self._artifacts is None:
                recorder.skip(Stage.REBUILD, "no build steps configured")
            else:
                with recorder.stage(Stage.REBUILD, cancellable=False) as ctx:
                    ran = self._artifacts.build(components)
                    ctx.detail = ", ".join(ran) or "no build steps"
        finally:
            # services come back up even when the restore or rebuild failed
            with recorder.stage(Stage.START_SERVICES, cancellable=False) as ctx:
                for service in services:
                    self._services.start(service.name)
                ctx.detail = ", ".join(s.name for s in services) or "no services"

        with recorder.stage(Stage.VERIFY, cancellable=False) as ctx:
            ctx.detail = self.verify(services, self._max_health_attempts)

    def verify(self, services: list[ServiceSpec], max_attempts: int) -> str:
        """Probe every service that has a health check.

        Raises:
            HealthCheckError: For the first service still not healthy
        """
        checked = []
        for service in services:
            if service.health is None:
                continue
            verdict = self._probe.check_with_retry(service, max_attempts)
            if not verdict.healthy:
                raise HealthCheckError(service.name, verdict)
            checked.append(f"{service.name} healthy after {verdict.attempt}")
        return "; ".join(checked) or "no health checks configured"

