"""Deployment engine: remote execution, snapshots, services and orchestration."""

from hostdeploy.deploy.executor import (
    CommandResult,
    LocalExecutor,
    RemoteExecutor,
    SSHExecutor,
    create_executor,
)
from hostdeploy.deploy.lock import CancellationToken, TargetLock
from hostdeploy.deploy.orchestrator import DeploymentOrchestrator, build_orchestrator
from hostdeploy.deploy.rollback import RollbackManager
from hostdeploy.deploy.snapshots import SnapshotStore

__all__ = [
    "CancellationToken",
    "CommandResult",
    "DeploymentOrchestrator",
    "LocalExecutor",
    "RemoteExecutor",
    "RollbackManager",
    "SSHExecutor",
    "SnapshotStore",
    "TargetLock",
    "build_orchestrator",
    "create_executor",
]
