"""Deployment outcome models: the terminal record of one orchestration run."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Stage(str, Enum):
    """Named states of the deploy and rollback state machines."""

    INIT = "init"
    DETECT_MODE = "detect_mode"
    INSTALL_PREREQUISITES = "install_prerequisites"
    BACKUP = "backup"
    SYNC_ARTIFACTS = "sync_artifacts"
    RESTART_SERVICES = "restart_services"
    VERIFY = "verify"
    ROLLBACK = "rollback"
    RESOLVE_SNAPSHOT = "resolve_snapshot"
    SAFETY_SNAPSHOT = "safety_snapshot"
    STOP_SERVICES = "stop_services"
    RESTORE = "restore"
    REBUILD = "rebuild"
    START_SERVICES = "start_services"


class StageStatus(str, Enum):
    """How a stage ended."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class DeploymentMode(str, Enum):
    """Whether the deployment root existed before the run."""

    FRESH = "fresh"
    UPDATE = "update"


class OutcomeStatus(str, Enum):
    """Terminal state of a run."""

    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled_back"
    FAILED_NO_ROLLBACK = "failed_no_rollback"


class Operation(str, Enum):
    """Entry point that produced an outcome."""

    DEPLOY = "deploy"
    ROLLBACK = "rollback"


class StageResult(BaseModel):
    """Result of one stage of a run."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    stage: Stage
    status: StageStatus
    detail: str = ""
    error_kind: str | None = None
    error_message: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime = Field(default_factory=utcnow)


class DeploymentOutcome(BaseModel):
    """Immutable terminal record of a deploy or rollback run.

    Attributes:
        status: succeeded, rolled_back or failed_no_rollback
        operation: deploy or rollback
        target: Target name
        mode: Fresh or update (deploy runs only)
        backup_snapshot_id: Snapshot created by this run's backup stage
        rollback_snapshot_id: Snapshot restored during rollback, if any
        safety_snapshot_id: Snapshot of the state replaced by the restore
        failed_stage: First stage that failed
        error_kind: Machine-readable kind of the first failure
        error_message: Human-readable message of the first failure
        stages: Ordered stage results
        pruned_snapshots: Snapshots deleted by retention during this run
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    status: OutcomeStatus
    operation: Operation = Operation.DEPLOY
    target: str
    mode: DeploymentMode | None = None
    backup_snapshot_id: str | None = None
    rollback_snapshot_id: str | None = None
    safety_snapshot_id: str | None = None
    failed_stage: Stage | None = None
    error_kind: str | None = None
    error_message: str | None = None
    stages: tuple[StageResult, ...] = ()
    pruned_snapshots: tuple[str, ...] = ()
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime = Field(default_factory=utcnow)

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCEEDED

    def stage(self, stage: Stage) -> StageResult | None:
        """Return the last result recorded for a stage, if any."""
        for result in reversed(self.stages):
            if result.stage == stage:
                return result
        return None
