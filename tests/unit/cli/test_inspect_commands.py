"""Unit tests for the snapshots and history CLI commands."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from hostdeploy.cli.commands.inspect import format_size, history, snapshots
from hostdeploy.deploy.history import append_outcome
from hostdeploy.models.config import DeployConfig
from hostdeploy.models.outcome import DeploymentOutcome, OutcomeStatus, Stage
from hostdeploy.models.snapshot import Snapshot, SnapshotKind


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def config(ssh_target) -> DeployConfig:
    return DeployConfig(target=ssh_target)


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    return tmp_path / "hostdeploy.yaml"


def _snapshot(second: int, label: str | None = None) -> Snapshot:
    created_at = datetime(2025, 12, 18, 14, 30, second, tzinfo=timezone.utc)
    return Snapshot(
        id=f"backup_20251218_1430{second:02d}_000000",
        kind=SnapshotKind.BACKUP,
        source_path="/home/ubuntu/webapp",
        size_bytes=3 * 1024 * 1024,
        created_at=created_at,
        label=label,
    )


@pytest.fixture
def orchestrator() -> MagicMock:
    mock = MagicMock()
    mock.__enter__.return_value = mock
    mock.list_snapshots.return_value = [_snapshot(2, "v1.4.2"), _snapshot(1)]
    return mock


@pytest.fixture
def patched(config, config_path, orchestrator):
    with patch(
        "hostdeploy.cli.commands.inspect.load_deploy_config",
        return_value=(config, config_path),
    ), patch(
        "hostdeploy.cli.commands.inspect.build_orchestrator", return_value=orchestrator
    ):
        yield


@pytest.mark.unit
class TestSnapshotsCommand:
    """Tests for ``hostdeploy snapshots``."""

    def test_table(self, runner, patched) -> None:
        """Snapshots are listed newest first with size and label."""
        result = runner.invoke(snapshots, [])

        assert result.exit_code == 0, result.output
        lines = [line for line in result.output.splitlines() if "backup_" in line]
        assert "backup_20251218_143002_000000" in lines[0]
        assert "3.0M" in lines[0]
        assert "v1.4.2" in lines[0]
        assert "backup_20251218_143001_000000" in lines[1]

    def test_limit_and_json(self, runner, patched) -> None:
        """--limit caps the list; --json prints manifests."""
        result = runner.invoke(snapshots, ["--limit", "1", "--json"])

        payload = json.loads(result.output)
        assert [s["id"] for s in payload] == ["backup_20251218_143002_000000"]
        assert payload[0]["kind"] == "backup"

    def test_empty(self, runner, patched, orchestrator) -> None:
        """An empty snapshot root is reported, not an error."""
        orchestrator.list_snapshots.return_value = []

        result = runner.invoke(snapshots, [])

        assert result.exit_code == 0
        assert "No snapshots under /home/ubuntu/webapp_backups" in result.output


@pytest.mark.unit
class TestHistoryCommand:
    """Tests for ``hostdeploy history``."""

    def test_recent_runs(self, runner, patched, config_path) -> None:
        """Recorded runs for the target are shown newest first."""
        ledger = config_path.parent / ".hostdeploy" / "history.json"
        append_outcome(
            ledger,
            DeploymentOutcome(
                status=OutcomeStatus.SUCCEEDED,
                target="production",
                backup_snapshot_id="backup_20251218_143001_000000",
                finished_at=datetime(2025, 12, 18, 14, 31, tzinfo=timezone.utc),
            ),
        )
        append_outcome(
            ledger,
            DeploymentOutcome(
                status=OutcomeStatus.ROLLED_BACK,
                target="production",
                backup_snapshot_id="backup_20251219_090001_000000",
                failed_stage=Stage.VERIFY,
                error_kind="health_check",
                finished_at=datetime(2025, 12, 19, 9, 2, tzinfo=timezone.utc),
            ),
        )
        append_outcome(
            ledger, DeploymentOutcome(status=OutcomeStatus.SUCCEEDED, target="staging")
        )

        result = runner.invoke(history, [])

        assert result.exit_code == 0, result.output
        lines = [line for line in result.output.splitlines() if line.startswith("  ")]
        assert len(lines) == 2
        assert "rolled_back" in lines[0]
        assert "[verify: health_check]" in lines[0]
        assert "2025-12-18 14:31:00" in lines[1]

    def test_no_history(self, runner, patched) -> None:
        """A missing ledger is reported, not an error."""
        result = runner.invoke(history, ["--json"])

        assert result.exit_code == 0
        assert json.loads(result.output) == []

    def test_corrupt_history_exits_1(self, runner, patched, config_path) -> None:
        """An unreadable ledger is an error."""
        ledger = config_path.parent / ".hostdeploy" / "history.json"
        ledger.parent.mkdir()
        ledger.write_text("[]")

        result = runner.invoke(history, [])

        assert result.exit_code == 1
        assert "history" in result.output


@pytest.mark.unit
class TestFormatSize:
    """Tests for format_size."""

    @pytest.mark.parametrize(
        ("size", "expected"),
        [(512, "512B"), (2048, "2.0K"), (5 * 1024**3, "5.0G")],
    )
    def test_units(self, size: int, expected: str) -> None:
        assert format_size(size) == expected
