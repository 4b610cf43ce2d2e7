"""Pydantic models for the hostdeploy configuration file.

This module defines the schema of ``hostdeploy.yaml``: the target host, the
services to restart and verify, how artifacts are synced and built, and the
retry, retention and timeout policies applied to every run.
"""

from __future__ import annotations

import re
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from hostdeploy.config.defaults import (
    DEFAULT_HEALTH_CONFIG,
    DEFAULT_HISTORY_MAX_ENTRIES,
    DEFAULT_MIGRATION_PATTERN,
    DEFAULT_TIMEOUTS,
    DISK_USAGE_WARN_PERCENT,
)
from hostdeploy.models.plan import Component
from hostdeploy.models.service import ServiceSpec
from hostdeploy.models.snapshot import RetentionPolicy
from hostdeploy.models.target import Target


class BackoffStrategy(str, Enum):
    """Delay growth between health check attempts."""

    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class BackoffConfig(BaseModel):
    """Backoff between health check attempts.

    Attributes:
        strategy: fixed, linear or exponential
        delay: Base delay in seconds
        step: Increment per attempt (linear)
        factor: Multiplier per attempt (exponential)
        max_delay: Upper bound on any single delay
    """

    model_config = ConfigDict(extra="forbid")

    strategy: BackoffStrategy = Field(
        default=BackoffStrategy(DEFAULT_HEALTH_CONFIG["strategy"])
    )
    delay: float = Field(default=float(DEFAULT_HEALTH_CONFIG["delay"]), ge=0)
    step: float = Field(default=5.0, ge=0)
    factor: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=60.0, ge=0)


class HealthConfig(BaseModel):
    """Health verification policy."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(
        default=int(DEFAULT_HEALTH_CONFIG["max_attempts"]), ge=1
    )
    timeout: float = Field(default=float(DEFAULT_HEALTH_CONFIG["timeout"]), gt=0)
    backoff: BackoffConfig = Field(default_factory=BackoffConfig)


class TimeoutConfig(BaseModel):
    """Finite timeouts for remote operations, in seconds."""

    model_config = ConfigDict(extra="forbid")

    command: float = Field(default=DEFAULT_TIMEOUTS["command"], gt=0)
    connect: float = Field(default=DEFAULT_TIMEOUTS["connect"], gt=0)


class BuildStep(BaseModel):
    """One command run inside the deployment root after syncing code.

    Steps without a component run for every plan.
    """

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None)
    component: Component | None = Field(default=None)
    workdir: str | None = Field(default=None, description="Relative to deploy root")
    command: str = Field(..., min_length=1)
    timeout: float | None = Field(default=None, gt=0)

    @property
    def display_name(self) -> str:
        return self.name or self.command.split()[0]


class ArtifactConfig(BaseModel):
    """How new code reaches the deployment root.

    Attributes:
        repository: Git URL cloned on fresh deploys, fetched on updates
        branch: Branch to deploy
        steps: Build/publish commands run after the sync
    """

    model_config = ConfigDict(extra="forbid")

    repository: str | None = Field(default=None)
    branch: str = Field(default="main")
    steps: list[BuildStep] = Field(default_factory=list)


class MigrationConfig(BaseModel):
    """Forward-only database migration scripts.

    Attributes:
        directory: Script directory, relative to the deploy root
        pattern: Regex with a numeric first group that orders scripts
        command: Command template; ``{path}`` is replaced by the script path
    """

    model_config = ConfigDict(extra="forbid")

    directory: str = Field(..., min_length=1)
    pattern: str = Field(default=DEFAULT_MIGRATION_PATTERN)
    command: str = Field(..., min_length=1)
    timeout: float | None = Field(default=None, gt=0)

    @field_validator("pattern")
    @classmethod
    def validate_pattern(cls, v: str) -> str:
        """Require a compilable regex with a numeric ordering group."""
        try:
            compiled = re.compile(v)
        except re.error as exc:
            raise ValueError(f"Invalid migration pattern {v!r}: {exc}") from exc
        if compiled.groups < 1:
            raise ValueError("Migration pattern needs a group capturing the number")
        return v

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: str) -> str:
        if "{path}" not in v:
            raise ValueError("Migration command must contain the {path} placeholder")
        return v


class Prerequisite(BaseModel):
    """Software required on a fresh host.

    Attributes:
        name: Display name (e.g., nginx)
        check: Command exiting 0 when the prerequisite is present
        install: Commands run in order when the check fails
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1)
    check: str = Field(..., min_length=1)
    install: list[str] = Field(default_factory=list)


class LockConfig(BaseModel):
    """Advisory lock settings."""

    model_config = ConfigDict(extra="forbid")

    remote: bool = Field(
        default=True, description="Also hold a marker directory on the target"
    )


class HistoryConfig(BaseModel):
    """Local run history ledger."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = Field(default=True)
    path: str | None = Field(default=None, description="Ledger path")
    max_entries: int = Field(default=DEFAULT_HISTORY_MAX_ENTRIES, ge=1)


class DeployConfig(BaseModel):
    """Top-level hostdeploy configuration."""

    model_config = ConfigDict(extra="forbid")

    target: Target
    services: list[ServiceSpec] = Field(default_factory=list)
    artifacts: ArtifactConfig = Field(default_factory=ArtifactConfig)
    migrations: MigrationConfig | None = Field(default=None)
    prerequisites: list[Prerequisite] = Field(default_factory=list)
    disk_warn_percent: int = Field(default=DISK_USAGE_WARN_PERCENT, ge=1, le=100)
    retention: RetentionPolicy = Field(default_factory=RetentionPolicy)
    health: HealthConfig = Field(default_factory=HealthConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)

    @model_validator(mode="after")
    def validate_unique_services(self) -> DeployConfig:
        """Service names must be unique."""
        seen: set[str] = set()
        for service in self.services:
            if service.name in seen:
                raise ValueError(f"Duplicate service name: {service.name}")
            seen.add(service.name)
        return self

    def services_for(self, component: Component) -> list[ServiceSpec]:
        """Return the services serving a component, in configuration order."""
        return [s for s in self.services if s.component == component]
