"""Run history ledger models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from hostdeploy.models.outcome import DeploymentOutcome


class RunHistory(BaseModel):
    """Recent outcomes, keyed by target name, oldest first."""

    model_config = ConfigDict(extra="forbid")

    version: str = Field(default="1.0")
    targets: dict[str, list[DeploymentOutcome]] = Field(default_factory=dict)
