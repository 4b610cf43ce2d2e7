"""Tests for the hostdeploy exception hierarchy."""

from __future__ import annotations

import pytest

from hostdeploy.lib.errors import (
    AlreadyInProgressError,
    ConfigError,
    DeploymentCancelledError,
    HealthCheckError,
    HostDeployError,
    MigrationError,
    PlanError,
    ServiceError,
    SnapshotError,
    SnapshotErrorKind,
    SnapshotNotFoundError,
    TransportError,
    TransportErrorKind,
)
from hostdeploy.models.health import HealthStatus, HealthVerdict


@pytest.mark.unit
class TestErrorKinds:
    """Every error exposes a machine-readable kind."""

    def test_config_error_formats_field(self) -> None:
        """ConfigError names the offending field."""
        error = ConfigError("target.host", "is required")

        assert error.field == "target.host"
        assert error.message == "is required"
        assert "target.host" in str(error)
        assert error.error_kind == "config"

    def test_transport_error_kind_includes_failure_class(self) -> None:
        """TransportError kinds are namespaced under transport."""
        error = TransportError(
            TransportErrorKind.NON_ZERO_EXIT, "boom", command="false", exit_code=1
        )

        assert error.error_kind == "transport.non_zero_exit"
        assert error.exit_code == 1
        assert error.command == "false"

    def test_snapshot_error_kind(self) -> None:
        """SnapshotError kinds are namespaced under snapshot."""
        error = SnapshotError(SnapshotErrorKind.INSUFFICIENT_SPACE, "disk full")

        assert error.error_kind == "snapshot.insufficient_space"

    def test_snapshot_not_found_without_id_mentions_rollback(self) -> None:
        """A missing 'latest' snapshot has a dedicated message."""
        error = SnapshotNotFoundError(None)

        assert error.snapshot_id is None
        assert "No snapshots" in error.message
        assert error.error_kind == "snapshot.not_found"

    def test_health_check_error_reports_last_verdict(self) -> None:
        """HealthCheckError summarises the final verdict."""
        verdict = HealthVerdict(status=HealthStatus.UNREACHABLE, check="api", attempt=3)
        error = HealthCheckError("api", verdict)

        assert "unreachable" in error.message
        assert "3 attempt" in error.message
        assert error.verdict is verdict

    def test_migration_error_keeps_applied_scripts(self) -> None:
        """MigrationError lists scripts applied before the failure."""
        error = MigrationError("003_add.sql", ["001_init.sql", "002_users.sql"], "x")

        assert error.applied == ["001_init.sql", "002_users.sql"]
        assert error.script == "003_add.sql"

    def test_already_in_progress_includes_holder(self) -> None:
        """The lock holder is shown when known."""
        error = AlreadyInProgressError("ubuntu@host:22/srv/app", "ci@agent pid=1")

        assert "ci@agent pid=1" in error.message

    @pytest.mark.parametrize(
        "error",
        [
            PlanError("bad"),
            ServiceError("api", "start", "failed"),
            DeploymentCancelledError("backup"),
        ],
    )
    def test_all_errors_share_base(self, error: HostDeployError) -> None:
        """All errors derive from HostDeployError and carry a message."""
        assert isinstance(error, HostDeployError)
        assert error.message
