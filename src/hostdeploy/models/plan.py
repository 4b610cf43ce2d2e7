"""Deployment plan model: the caller-supplied flags for one run."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from hostdeploy.config.defaults import DEFAULT_HEALTH_CONFIG
from hostdeploy.lib.errors import PlanError


class Component(str, Enum):
    """A deployable part of the application."""

    BACKEND = "backend"
    FRONTEND = "frontend"


class ComponentSelection(str, Enum):
    """Which components a run deploys."""

    BACKEND = "backend"
    FRONTEND = "frontend"
    BOTH = "both"

    def includes(self, component: Component) -> bool:
        """Return True if this selection covers the component."""
        return self is ComponentSelection.BOTH or self.value == component.value


class DeploymentPlan(BaseModel):
    """Read-only description of one orchestration run.

    Attributes:
        components: Components to deploy
        skip_backup: Skip the pre-deploy snapshot (caller-accepted risk)
        skip_health_check: Treat the run as verified without probing
        max_health_attempts: Health check attempts per service
        prerequisite_attempts: Attempts per prerequisite install step
        label: Free-text label for the backup (e.g., git revision)
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    components: ComponentSelection = Field(
        default=ComponentSelection.BOTH, description="Components to deploy"
    )
    skip_backup: bool = Field(default=False, description="Skip the backup stage")
    skip_health_check: bool = Field(
        default=False, description="Skip health verification"
    )
    max_health_attempts: int = Field(
        default=int(DEFAULT_HEALTH_CONFIG["max_attempts"]),
        ge=1,
        description="Maximum health check attempts",
    )
    prerequisite_attempts: int = Field(
        default=1, ge=1, description="Attempts per prerequisite install step"
    )
    label: str | None = Field(default=None, description="Backup label")

    @classmethod
    def from_flags(
        cls,
        *,
        backend_only: bool = False,
        frontend_only: bool = False,
        skip_backup: bool = False,
        skip_health_check: bool = False,
        max_health_attempts: int | None = None,
        prerequisite_attempts: int = 1,
        label: str | None = None,
    ) -> DeploymentPlan:
        """Build a plan from CLI/CI flags.

        Raises:
            PlanError: If the flags contradict each other or are out of range
        """
        if backend_only and frontend_only:
            raise PlanError("--backend-only and --frontend-only are mutually exclusive")

        if backend_only:
            components = ComponentSelection.BACKEND
        elif frontend_only:
            components = ComponentSelection.FRONTEND
        else:
            components = ComponentSelection.BOTH

        if max_health_attempts is None:
            max_health_attempts = int(DEFAULT_HEALTH_CONFIG["max_attempts"])
        if max_health_attempts < 1:
            raise PlanError(
                f"max_health_attempts must be at least 1, got {max_health_attempts}"
            )
        if prerequisite_attempts < 1:
            raise PlanError(
                f"prerequisite_attempts must be at least 1, got {prerequisite_attempts}"
            )

        return cls(
            components=components,
            skip_backup=skip_backup,
            skip_health_check=skip_health_check,
            max_health_attempts=max_health_attempts,
            prerequisite_attempts=prerequisite_attempts,
            label=label,
        )
