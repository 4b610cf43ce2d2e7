"""End-to-end tests for the deploy state machine.

The target is a directory under tmp_path driven through LocalExecutor.
Services are marker files; the API's HTTP health endpoint is a mocked
requests session so tests decide when it is healthy.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import requests

from hostdeploy.deploy.executor import LocalExecutor
from hostdeploy.deploy.health import FixedBackoff, HealthProbe
from hostdeploy.deploy.lock import CancellationToken, TargetLock
from hostdeploy.deploy.orchestrator import DeploymentOrchestrator
from hostdeploy.deploy.services import ServiceController
from hostdeploy.lib.errors import (
    AlreadyInProgressError,
    SnapshotError,
    SnapshotErrorKind,
    TransportError,
    TransportErrorKind,
)
from hostdeploy.models.config import DeployConfig
from hostdeploy.models.outcome import (
    DeploymentMode,
    OutcomeStatus,
    Stage,
    StageStatus,
)
from hostdeploy.models.plan import DeploymentPlan
from hostdeploy.models.snapshot import SnapshotKind
from hostdeploy.models.target import Target

HEALTH_URL = "http://127.0.0.1:5000/api/health"


def _healthy() -> MagicMock:
    response = MagicMock()
    response.status_code = 200
    response.text = '{"status": "ok"}'
    return response


REFUSED = requests.exceptions.ConnectionError("connection refused")


def _config(target: Target, run_dir: Path, service_factory, **overrides: Any) -> DeployConfig:
    values: dict[str, Any] = {
        "target": target,
        "services": [
            service_factory(
                "api", run_dir, component="backend",
                health={"type": "http", "url": HEALTH_URL},
            ),
            service_factory("web", run_dir, component="frontend"),
        ],
        "artifacts": {"steps": [{"name": "build", "command": "echo built > BUILD"}]},
        "health": {"max_attempts": 3, "backoff": {"delay": 0}},
        "retention": {"keep": 5},
    }
    values.update(overrides)
    return DeployConfig(**values)


class Harness:
    """Orchestrator wired to a local target and a scripted health endpoint."""

    def __init__(self, config: DeployConfig, executor: LocalExecutor) -> None:
        self.config = config
        self.root = Path(config.target.deploy_root)
        self.session = MagicMock(spec=requests.Session)
        self.session.get.return_value = _healthy()
        services = ServiceController(executor, config.services)
        probe = HealthProbe(
            executor, services, backoff=FixedBackoff(0), session=self.session
        )
        self.orchestrator = DeploymentOrchestrator(
            config, executor, services=services, probe=probe
        )

    def existing_deployment(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / "index.js").write_text("console.log('v1')\n")

    def health(self, *responses: Any) -> None:
        self.session.get.side_effect = list(responses)

    def deploy(self, **plan: Any):
        return self.orchestrator.deploy(DeploymentPlan(max_health_attempts=3, **plan))


@pytest.fixture
def harness(local_target, local_executor, run_dir, service_factory) -> Harness:
    return Harness(_config(local_target, run_dir, service_factory), local_executor)


def _stages(outcome) -> list[tuple[Stage, StageStatus]]:
    return [(r.stage, r.status) for r in outcome.stages]


@pytest.mark.unit
class TestSuccessfulDeploys:
    """Runs that end in succeeded."""

    def test_fresh_deploy(self, harness: Harness, run_dir: Path) -> None:
        """A missing deployment root is a fresh deploy: prerequisites, no backup."""
        outcome = harness.deploy()

        assert outcome.status == OutcomeStatus.SUCCEEDED
        assert outcome.mode == DeploymentMode.FRESH
        assert outcome.backup_snapshot_id is None
        assert _stages(outcome) == [
            (Stage.INIT, StageStatus.SUCCEEDED),
            (Stage.DETECT_MODE, StageStatus.SUCCEEDED),
            (Stage.INSTALL_PREREQUISITES, StageStatus.SUCCEEDED),
            (Stage.BACKUP, StageStatus.SKIPPED),
            (Stage.SYNC_ARTIFACTS, StageStatus.SUCCEEDED),
            (Stage.RESTART_SERVICES, StageStatus.SUCCEEDED),
            (Stage.VERIFY, StageStatus.SUCCEEDED),
        ]
        assert (harness.root / "BUILD").read_text() == "built\n"
        assert (run_dir / "api.running").exists()
        assert (run_dir / "web.running").exists()

    def test_update_takes_backup(self, harness: Harness) -> None:
        """An existing deployment is backed up before new code is synced."""
        harness.existing_deployment()

        outcome = harness.deploy(label="v1.4.2")

        assert outcome.status == OutcomeStatus.SUCCEEDED
        assert outcome.mode == DeploymentMode.UPDATE
        assert outcome.stage(Stage.INSTALL_PREREQUISITES).status == StageStatus.SKIPPED
        backup = harness.orchestrator.snapshots.get(outcome.backup_snapshot_id)
        assert backup.label == "v1.4.2"
        assert not harness.orchestrator.snapshots.is_pinned(backup.id)
        snapshot_data = Path(harness.config.target.snapshot_root) / backup.id / "data"
        assert (snapshot_data / "index.js").exists()
        assert not (snapshot_data / "BUILD").exists()

    def test_skip_health_check(self, harness: Harness) -> None:
        """Skipping verification assumes the deployment is healthy."""
        harness.existing_deployment()
        harness.health(REFUSED)

        outcome = harness.deploy(skip_health_check=True)

        assert outcome.status == OutcomeStatus.SUCCEEDED
        assert outcome.stage(Stage.VERIFY).status == StageStatus.SKIPPED
        harness.session.get.assert_not_called()

    def test_backend_only_restarts_backend(self, harness: Harness, run_dir: Path) -> None:
        """Only services of the selected component are restarted."""
        harness.existing_deployment()

        outcome = harness.deploy(components="backend")

        assert outcome.succeeded
        assert (run_dir / "api.running").exists()
        assert not (run_dir / "web.running").exists()

    def test_sixth_deploy_prunes_oldest_backup(self, harness: Harness) -> None:
        """Retention keeps the five newest backups."""
        harness.existing_deployment()

        outcomes = [harness.deploy() for _ in range(6)]

        assert all(o.succeeded for o in outcomes)
        assert outcomes[-1].pruned_snapshots == (outcomes[0].backup_snapshot_id,)
        remaining = [s.id for s in harness.orchestrator.list_snapshots()]
        assert remaining == [o.backup_snapshot_id for o in reversed(outcomes[1:])]


@pytest.mark.unit
class TestAutomaticRollback:
    """Failures after new code went live restore this run's backup."""

    def test_unhealthy_deploy_is_rolled_back(self, harness: Harness, run_dir: Path) -> None:
        """Three unreachable probes fail verify; the backup is restored."""
        harness.existing_deployment()
        harness.health(REFUSED, REFUSED, REFUSED, _healthy())

        outcome = harness.deploy()

        assert outcome.status == OutcomeStatus.ROLLED_BACK
        assert outcome.failed_stage == Stage.VERIFY
        assert outcome.error_kind == "health_check"
        assert "unreachable after 3 attempt(s)" in outcome.error_message
        assert outcome.rollback_snapshot_id == outcome.backup_snapshot_id
        assert outcome.safety_snapshot_id is not None
        assert _stages(outcome)[6:] == [
            (Stage.VERIFY, StageStatus.FAILED),
            (Stage.RESOLVE_SNAPSHOT, StageStatus.SUCCEEDED),
            (Stage.SAFETY_SNAPSHOT, StageStatus.SUCCEEDED),
            (Stage.STOP_SERVICES, StageStatus.SUCCEEDED),
            (Stage.RESTORE, StageStatus.SUCCEEDED),
            (Stage.REBUILD, StageStatus.SUCCEEDED),
            (Stage.START_SERVICES, StageStatus.SUCCEEDED),
            (Stage.VERIFY, StageStatus.SUCCEEDED),
            (Stage.ROLLBACK, StageStatus.SUCCEEDED),
        ]
        assert harness.session.get.call_count == 4
        assert (harness.root / "index.js").read_text() == "console.log('v1')\n"
        assert (run_dir / "api.running").exists()

        safety = harness.orchestrator.snapshots.get(outcome.safety_snapshot_id)
        assert safety.kind == SnapshotKind.PRE_ROLLBACK

    def test_failed_rollback_is_not_retried(self, harness: Harness) -> None:
        """A rollback whose verify fails ends the run; no second rollback."""
        harness.existing_deployment()
        harness.health(*[REFUSED] * 6)

        outcome = harness.deploy()

        assert outcome.status == OutcomeStatus.FAILED_NO_ROLLBACK
        assert outcome.failed_stage == Stage.VERIFY
        assert outcome.stage(Stage.ROLLBACK).status == StageStatus.FAILED
        assert sum(r.stage == Stage.RESTORE for r in outcome.stages) == 1
        assert outcome.safety_snapshot_id is not None

    def test_cancellation_after_backup_rolls_back(self, harness: Harness) -> None:
        """A run cancelled once new code is synced is rolled back."""
        harness.existing_deployment()
        token = CancellationToken()
        sync = harness.orchestrator.artifacts.sync

        def sync_then_cancel(mode):
            sync(mode)
            token.cancel("SIGTERM")

        with patch.object(harness.orchestrator.artifacts, "sync", side_effect=sync_then_cancel):
            outcome = harness.orchestrator.deploy(DeploymentPlan(), token)

        assert outcome.status == OutcomeStatus.ROLLED_BACK
        assert outcome.failed_stage == Stage.RESTART_SERVICES
        assert outcome.error_kind == "cancelled"


@pytest.mark.unit
class TestFailuresWithoutRollback:
    """Failures before new code went live, or without a backup."""

    def test_backup_failure_stops_run(self, harness: Harness, run_dir: Path) -> None:
        """A failed backup ends the run before anything is synced or restarted."""
        harness.existing_deployment()
        error = SnapshotError(SnapshotErrorKind.INSUFFICIENT_SPACE, "disk full")

        with patch.object(harness.orchestrator.snapshots, "create", side_effect=error):
            outcome = harness.deploy()

        assert outcome.status == OutcomeStatus.FAILED_NO_ROLLBACK
        assert outcome.failed_stage == Stage.BACKUP
        assert outcome.error_kind == "snapshot.insufficient_space"
        assert outcome.stage(Stage.SYNC_ARTIFACTS) is None
        assert outcome.stage(Stage.ROLLBACK) is None
        assert not (harness.root / "BUILD").exists()
        assert not (run_dir / "api.running").exists()

    def test_build_failure_is_not_rolled_back(
        self, local_target, local_executor, run_dir, service_factory
    ) -> None:
        """Sync failures leave services untouched and take no rollback."""
        config = _config(
            local_target, run_dir, service_factory,
            artifacts={"steps": [{"name": "compile", "command": "exit 3"}]},
        )
        harness = Harness(config, local_executor)
        harness.existing_deployment()

        outcome = harness.deploy()

        assert outcome.status == OutcomeStatus.FAILED_NO_ROLLBACK
        assert outcome.failed_stage == Stage.SYNC_ARTIFACTS
        assert outcome.error_kind == "artifact_sync"
        assert outcome.backup_snapshot_id is not None
        assert outcome.rollback_snapshot_id is None
        assert not (run_dir / "api.running").exists()

    def test_skip_backup_cannot_roll_back(self, harness: Harness) -> None:
        """Without this run's backup a verify failure is final."""
        harness.existing_deployment()
        harness.health(REFUSED, REFUSED, REFUSED)

        outcome = harness.deploy(skip_backup=True)

        assert outcome.status == OutcomeStatus.FAILED_NO_ROLLBACK
        assert outcome.stage(Stage.BACKUP).status == StageStatus.SKIPPED
        assert outcome.stage(Stage.ROLLBACK).status == StageStatus.SKIPPED
        assert outcome.backup_snapshot_id is None
        assert harness.orchestrator.list_snapshots() == []

    def test_old_backups_are_not_used(self, harness: Harness) -> None:
        """Automatic rollback only uses a backup taken by the same run."""
        harness.existing_deployment()
        harness.orchestrator.snapshots.create(str(harness.root))
        harness.health(REFUSED, REFUSED, REFUSED)

        outcome = harness.deploy(skip_backup=True)

        assert outcome.status == OutcomeStatus.FAILED_NO_ROLLBACK
        assert outcome.rollback_snapshot_id is None


@pytest.mark.unit
class TestLocking:
    """Concurrent runs against one target."""

    def test_second_run_rejected(self, harness: Harness, local_executor) -> None:
        """A deploy while the target is locked raises before touching anything."""
        harness.existing_deployment()

        with TargetLock(local_executor).hold(owner="other run"):
            with pytest.raises(AlreadyInProgressError):
                harness.deploy()

        assert harness.orchestrator.list_snapshots() == []
        assert not (harness.root / "BUILD").exists()

    def test_lock_released_after_run(self, harness: Harness) -> None:
        """Consecutive runs each acquire the lock."""
        harness.existing_deployment()

        assert harness.deploy().succeeded
        assert harness.deploy().succeeded
        assert not Path(harness.config.target.lock_path).exists()

    @pytest.mark.parametrize("operation", ["deploy", "rollback"])
    def test_unreachable_target_gives_outcome(
        self, ssh_target: Target, make_fake_executor, operation: str
    ) -> None:
        """A transport failure while taking the lock ends the run at init."""
        executor = make_fake_executor(ssh_target)
        executor.on(
            "mkdir -p",
            raises=TransportError(TransportErrorKind.CONNECTION_REFUSED, "refused"),
        )
        orchestrator = DeploymentOrchestrator(DeployConfig(target=ssh_target), executor)

        if operation == "deploy":
            outcome = orchestrator.deploy(DeploymentPlan())
        else:
            outcome = orchestrator.rollback()

        assert outcome.status == OutcomeStatus.FAILED_NO_ROLLBACK
        assert outcome.failed_stage == Stage.INIT
        assert outcome.error_kind == "transport.connection_refused"
        assert outcome.error_message == "refused"
        assert _stages(outcome) == [(Stage.INIT, StageStatus.FAILED)]
        assert len(executor.commands) == 1

    def test_unreachable_target_releases_local_lock(
        self, ssh_target: Target, make_fake_executor
    ) -> None:
        """A failed lock acquisition does not block the next run."""
        executor = make_fake_executor(ssh_target)
        executor.on(
            "mkdir -p",
            raises=TransportError(TransportErrorKind.TIMEOUT, "timed out"),
            times=1,
        )
        orchestrator = DeploymentOrchestrator(DeployConfig(target=ssh_target), executor)

        first = orchestrator.deploy(DeploymentPlan(skip_health_check=True))
        second = orchestrator.deploy(DeploymentPlan(skip_health_check=True))

        assert first.error_kind == "transport.timeout"
        assert second.stage(Stage.INIT).status == StageStatus.SUCCEEDED
