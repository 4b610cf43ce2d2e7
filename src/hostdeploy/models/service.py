"""Service models: managed long-running processes on a target."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from hostdeploy.config.defaults import (
    DEFAULT_HEALTH_STATUS_FIELD,
    DEFAULT_HEALTH_STATUS_VALUE,
)
from hostdeploy.models.plan import Component


class ServiceState(str, Enum):
    """Run state of a named service."""

    UNKNOWN = "unknown"
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    CRASHED = "crashed"


class ProcessManager(str, Enum):
    """Process supervisor used to control a service."""

    PM2 = "pm2"
    SYSTEMD = "systemd"
    COMMAND = "command"


class HttpHealthCheck(BaseModel):
    """Liveness check against an HTTP endpoint.

    Attributes:
        url: Endpoint URL
        expect_status: Required value of the JSON status field (None: any 2xx)
        status_field: JSON field holding the status
        from_target: Issue the request with curl on the target host
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["http"] = "http"
    url: str = Field(..., description="Health endpoint URL")
    expect_status: str | None = Field(
        default=DEFAULT_HEALTH_STATUS_VALUE,
        description="Expected value of the JSON status field (null: any 2xx)",
    )
    status_field: str = Field(
        default=DEFAULT_HEALTH_STATUS_FIELD, description="JSON status field"
    )
    from_target: bool = Field(
        default=False, description="Probe from the target host with curl"
    )


class ProcessHealthCheck(BaseModel):
    """Liveness check from the process manager's view of the service."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["process"] = "process"


HealthCheckConfig = Annotated[
    HttpHealthCheck | ProcessHealthCheck, Field(discriminator="type")
]


class ServiceSpec(BaseModel):
    """A long-running process the orchestrator restarts and verifies.

    Attributes:
        name: Process name known to the process manager
        component: Component this service serves
        manager: Process supervisor
        workdir: Working directory, relative to the deployment root
        start_command: Start command override (pm2: e.g. ``pm2 start ecosystem.config.js``)
        stop_command: Stop command override
        status_command: Status command (``command`` manager: exit 0 means running)
        use_sudo: Prefix systemctl calls with sudo
        health: Liveness check run after restarts
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(..., min_length=1)
    component: Component = Field(default=Component.BACKEND)
    manager: ProcessManager = Field(default=ProcessManager.PM2)
    workdir: str | None = Field(default=None)
    start_command: str | None = Field(default=None)
    stop_command: str | None = Field(default=None)
    status_command: str | None = Field(default=None)
    use_sudo: bool = Field(default=True)
    health: HealthCheckConfig | None = Field(default=None)

    @model_validator(mode="after")
    def validate_command_manager(self) -> ServiceSpec:
        """The ``command`` manager needs explicit commands."""
        if self.manager == ProcessManager.COMMAND:
            missing = [
                field
                for field in ("start_command", "stop_command", "status_command")
                if not getattr(self, field)
            ]
            if missing:
                raise ValueError(
                    f"Service '{self.name}' uses manager 'command' but is missing: "
                    f"{', '.join(missing)}"
                )
        return self
