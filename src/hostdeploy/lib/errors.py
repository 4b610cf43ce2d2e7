"""Custom exception hierarchy for hostdeploy configuration and operations.

Every exception carries an ``error_kind`` string. The orchestrator copies it
into the ``DeploymentOutcome`` so an unattended CI job can tell failures
apart without parsing messages.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from hostdeploy.models.health import HealthVerdict


class HostDeployError(Exception):
    """Base exception for all hostdeploy errors.

    All hostdeploy-specific exceptions inherit from this class, enabling
    centralized exception handling at the orchestrator boundary.
    """

    error_kind = "error"


class ConfigError(HostDeployError):
    """Exception raised for configuration errors.

    Attributes:
        field: The configuration field that caused the error
        message: Human-readable error message describing the issue
    """

    error_kind = "config"

    def __init__(self, field: str, message: str) -> None:
        """Initialize ConfigError with field and message.

        Args:
            field: Configuration field name where error occurred
            message: Descriptive error message
        """
        self.field = field
        self.message = message
        super().__init__(f"Configuration error in '{field}': {message}")


class PlanError(HostDeployError):
    """Exception raised for invalid or contradictory deployment plans.

    Raised before any remote side effect occurs.
    """

    error_kind = "plan"

    def __init__(self, message: str) -> None:
        """Create a plan error."""
        self.message = message
        super().__init__(message)


class TransportErrorKind(str, Enum):
    """Failure classes of a remote command execution."""

    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    AUTH_FAILURE = "auth_failure"
    NON_ZERO_EXIT = "non_zero_exit"


class TransportError(HostDeployError):
    """Exception raised when a remote command cannot be executed or fails.

    Never retried inside the executor; callers decide on retry policy.

    Attributes:
        kind: Failure class of the execution
        command: The command that was executed
        exit_code: Exit status for NON_ZERO_EXIT failures
        stderr: Captured standard error, when available
    """

    def __init__(
        self,
        kind: TransportErrorKind,
        message: str,
        *,
        command: str | None = None,
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        """Initialize TransportError.

        Args:
            kind: Failure class
            message: Human-readable error message
            command: Command that failed
            exit_code: Remote exit status when the command ran to completion
            stderr: Captured standard error output
        """
        self.kind = kind
        self.message = message
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message)

    @property
    def error_kind(self) -> str:  # type: ignore[override]
        return f"transport.{self.kind.value}"


class SnapshotErrorKind(str, Enum):
    """Failure classes of snapshot operations."""

    INSUFFICIENT_SPACE = "insufficient_space"
    SOURCE_MISSING = "source_missing"
    COPY_FAILED = "copy_failed"
    RESTORE_FAILED = "restore_failed"


class SnapshotError(HostDeployError):
    """Exception raised when a snapshot cannot be created or restored."""

    def __init__(self, kind: SnapshotErrorKind, message: str) -> None:
        """Create a snapshot error of the given kind."""
        self.kind = kind
        self.message = message
        super().__init__(message)

    @property
    def error_kind(self) -> str:  # type: ignore[override]
        return f"snapshot.{self.kind.value}"


class SnapshotNotFoundError(HostDeployError):
    """Exception raised when a requested snapshot does not exist."""

    error_kind = "snapshot.not_found"

    def __init__(self, snapshot_id: str | None, message: str | None = None) -> None:
        """Create a not-found error for a snapshot id (None means "latest")."""
        self.snapshot_id = snapshot_id
        if message is None:
            if snapshot_id is None:
                message = "No snapshots available for rollback"
            else:
                message = f"Snapshot not found: {snapshot_id}"
        self.message = message
        super().__init__(message)


class ServiceError(HostDeployError):
    """Exception raised when a service cannot be started or stopped.

    Attributes:
        service: Name of the service
        operation: Operation that failed (start, stop, status)
    """

    error_kind = "service"

    def __init__(self, service: str, operation: str, message: str) -> None:
        """Create a service error with context."""
        self.service = service
        self.operation = operation
        self.message = message
        super().__init__(f"Service '{service}' failed to {operation}: {message}")


class HealthCheckError(HostDeployError):
    """Exception raised when a health check is still failing after all retries."""

    error_kind = "health_check"

    def __init__(self, check: str, verdict: HealthVerdict) -> None:
        """Create a health check error from the last verdict."""
        self.check = check
        self.verdict = verdict
        self.message = (
            f"Health check '{check}' is {verdict.status.value} "
            f"after {verdict.attempt} attempt(s)"
        )
        super().__init__(self.message)


class PrerequisiteError(HostDeployError):
    """Exception raised when a prerequisite cannot be installed or verified."""

    error_kind = "prerequisite"

    def __init__(self, name: str, message: str) -> None:
        """Create a prerequisite error for the named prerequisite."""
        self.name = name
        self.message = message
        super().__init__(f"Prerequisite '{name}' unavailable: {message}")


class ArtifactSyncError(HostDeployError):
    """Exception raised when new code cannot be synced or built on the target."""

    error_kind = "artifact_sync"

    def __init__(self, step: str, message: str) -> None:
        """Create an artifact sync error for a named step."""
        self.step = step
        self.message = message
        super().__init__(f"Artifact step '{step}' failed: {message}")


class MigrationError(HostDeployError):
    """Exception raised when a migration script fails.

    Migrations are forward-only: scripts listed in ``applied`` stay applied.

    Attributes:
        script: The script that failed
        applied: Scripts applied successfully before the failure
    """

    error_kind = "migration"

    def __init__(self, script: str, applied: list[str], message: str) -> None:
        """Create a migration error."""
        self.script = script
        self.applied = applied
        self.message = message
        super().__init__(f"Migration '{script}' failed: {message}")


class AlreadyInProgressError(HostDeployError):
    """Exception raised when another run holds the lock for a target."""

    error_kind = "already_in_progress"

    def __init__(self, target: str, holder: str | None = None) -> None:
        """Create an error naming the locked target and, if known, the holder."""
        self.target = target
        self.holder = holder
        message = f"A deployment is already in progress for {target}"
        if holder:
            message += f" (held by {holder})"
        self.message = message
        super().__init__(message)


class DeploymentCancelledError(HostDeployError):
    """Exception raised when a run is cancelled between stages."""

    error_kind = "cancelled"

    def __init__(self, stage: str) -> None:
        """Create a cancellation error for the stage that was about to start."""
        self.stage = stage
        self.message = f"Run cancelled before stage '{stage}'"
        super().__init__(self.message)


class HistoryError(HostDeployError):
    """Exception raised when the local run history cannot be read or written."""

    error_kind = "history"

    def __init__(self, message: str) -> None:
        """Create a history error."""
        self.message = message
        super().__init__(message)
