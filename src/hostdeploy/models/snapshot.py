"""Snapshot models: point-in-time backups of a directory tree on a target."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from hostdeploy.config.defaults import DEFAULT_RETENTION_KEEP

SNAPSHOT_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S_%f"
SNAPSHOT_ID_PATTERN = re.compile(r"^(backup|pre_rollback)_(\d{8}_\d{6}_\d{6})$")


class SnapshotKind(str, Enum):
    """Why a snapshot was taken."""

    BACKUP = "backup"
    PRE_ROLLBACK = "pre_rollback"


def format_snapshot_id(kind: SnapshotKind, created_at: datetime) -> str:
    """Build the identifier for a snapshot taken at ``created_at``."""
    return f"{kind.value}_{created_at.strftime(SNAPSHOT_TIMESTAMP_FORMAT)}"


def parse_snapshot_id(snapshot_id: str) -> tuple[SnapshotKind, datetime] | None:
    """Split a snapshot identifier into kind and UTC timestamp.

    Returns:
        The kind and creation time, or None if the name is not a snapshot id
    """
    match = SNAPSHOT_ID_PATTERN.match(snapshot_id)
    if not match:
        return None
    created_at = datetime.strptime(match.group(2), SNAPSHOT_TIMESTAMP_FORMAT)
    return SnapshotKind(match.group(1)), created_at.replace(tzinfo=timezone.utc)


class Snapshot(BaseModel):
    """One completed backup. Never mutated after creation.

    Attributes:
        id: Timestamp-derived identifier, strictly increasing within a target
        kind: Regular backup or safety snapshot taken before a restore
        source_path: Directory the snapshot was copied from
        size_bytes: Size of the copied data
        created_at: Creation time (UTC)
        label: Optional free-text label (e.g., git revision)
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(..., pattern=SNAPSHOT_ID_PATTERN.pattern)
    kind: SnapshotKind = Field(default=SnapshotKind.BACKUP)
    source_path: str = Field(..., description="Directory the snapshot was taken of")
    size_bytes: int = Field(default=0, ge=0, description="Size of the snapshot data")
    created_at: datetime = Field(..., description="Creation time (UTC)")
    label: str | None = Field(default=None, description="Free-text label")

    @property
    def sort_key(self) -> tuple[datetime, str]:
        """Creation order key; newer snapshots compare greater."""
        return (self.created_at, self.id)


class RetentionPolicy(BaseModel):
    """How many snapshots to keep when pruning."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    keep: int = Field(default=DEFAULT_RETENTION_KEEP, ge=1)


class PruneReport(BaseModel):
    """Result of a best-effort prune pass."""

    deleted: list[str] = Field(default_factory=list)
    retained: list[str] = Field(default_factory=list)
    skipped_pinned: list[str] = Field(default_factory=list)
    failures: dict[str, str] = Field(default_factory=dict)
