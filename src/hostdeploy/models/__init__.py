"""Pydantic data models for hostdeploy configuration, plans and run results."""

from hostdeploy.models.config import DeployConfig
from hostdeploy.models.health import HealthStatus, HealthVerdict
from hostdeploy.models.outcome import (
    DeploymentMode,
    DeploymentOutcome,
    OutcomeStatus,
    Stage,
    StageResult,
    StageStatus,
)
from hostdeploy.models.plan import Component, ComponentSelection, DeploymentPlan
from hostdeploy.models.service import ServiceSpec, ServiceState
from hostdeploy.models.snapshot import RetentionPolicy, Snapshot, SnapshotKind
from hostdeploy.models.target import Target

__all__ = [
    "Component",
    "ComponentSelection",
    "DeployConfig",
    "DeploymentMode",
    "DeploymentOutcome",
    "DeploymentPlan",
    "HealthStatus",
    "HealthVerdict",
    "OutcomeStatus",
    "RetentionPolicy",
    "ServiceSpec",
    "ServiceState",
    "Snapshot",
    "SnapshotKind",
    "Stage",
    "StageResult",
    "StageStatus",
    "Target",
]
