"""Health verdict model."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class HealthStatus(str, Enum):
    """Classification of one liveness probe."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNREACHABLE = "unreachable"


class HealthVerdict(BaseModel):
    """Classified result of one probe. Never cached across runs.

    Attributes:
        status: healthy, unhealthy or unreachable
        check: Name of the checked service or endpoint
        attempt: 1-based attempt number that produced this verdict
        response: Raw probe response (body excerpt, process state or error)
        checked_at: When the probe completed (UTC)
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    status: HealthStatus
    check: str
    attempt: int = Field(default=1, ge=1)
    response: str = Field(default="")
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY
