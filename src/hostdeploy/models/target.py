"""Pydantic model for a deployment target host."""

from __future__ import annotations

import posixpath
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TransportType(str, Enum):
    """How commands reach the target host."""

    SSH = "ssh"
    LOCAL = "local"


class Target(BaseModel):
    """A deployment destination: host, credentials and deployment root.

    Attributes:
        name: Human-readable environment name (e.g., production)
        host: Host address
        port: SSH port
        user: Login user
        key_file: Path to a private key file
        password_env: Name of the environment variable holding the password
        deploy_root: Absolute path of the deployed application on the host
        backup_root: Directory holding snapshots (default: <deploy_root>_backups)
        transport: Command transport (ssh or local)
        shell_prelude: Shell snippet run before every command (e.g., loading NVM)
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(default="default", description="Environment name")
    host: str = Field(..., description="Host address")
    port: int = Field(default=22, ge=1, le=65535, description="SSH port")
    user: str = Field(default="ubuntu", description="Login user")
    key_file: str | None = Field(default=None, description="Private key file path")
    password_env: str | None = Field(
        default=None, description="Environment variable holding the SSH password"
    )
    deploy_root: str = Field(..., description="Deployment root path on the host")
    backup_root: str | None = Field(
        default=None, description="Snapshot directory on the host"
    )
    transport: TransportType = Field(
        default=TransportType.SSH, description="Command transport"
    )
    shell_prelude: str | None = Field(
        default=None, description="Shell snippet run before every command"
    )

    @field_validator("deploy_root", "backup_root")
    @classmethod
    def validate_absolute(cls, v: str | None) -> str | None:
        """Require absolute, normalised paths that are not the filesystem root."""
        if v is None:
            return v
        if not v.startswith("/"):
            raise ValueError(f"Path must be absolute: {v}")
        normalised = posixpath.normpath(v)
        if not normalised.strip("/"):
            raise ValueError("Path must not be the filesystem root")
        return normalised

    @property
    def snapshot_root(self) -> str:
        """Directory that holds snapshots for this target."""
        return self.backup_root or f"{self.deploy_root}_backups"

    @property
    def lock_path(self) -> str:
        """Marker directory used as the remote advisory lock."""
        return f"{self.deploy_root}.hostdeploy.lock"

    @property
    def identity(self) -> str:
        """Stable key identifying the deployment root this target mutates."""
        return f"{self.user}@{self.host}:{self.port}{self.deploy_root}"
