"""Point-in-time directory snapshots on a deployment target.

Layout under the target's snapshot root::

    <snapshot_root>/
        backup_20251218_143000_000000/
            snapshot.json       # manifest, written before the rename
            data/               # copy of the source directory
        .tmp-backup_.../        # in-flight copy, never listed

A snapshot becomes visible only through the final ``mv`` of a fully written
temp directory, and is hidden by a rename before it is deleted, so listings
never see partial snapshots.
"""

from __future__ import annotations

import posixpath
import shlex
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError

from hostdeploy.config.defaults import (
    SNAPSHOT_DATA_DIR,
    SNAPSHOT_MANIFEST,
    SNAPSHOT_PAGE_SIZE,
    SNAPSHOT_TMP_PREFIX,
)
from hostdeploy.deploy.executor import RemoteExecutor
from hostdeploy.lib.errors import (
    SnapshotError,
    SnapshotErrorKind,
    SnapshotNotFoundError,
    TransportError,
)
from hostdeploy.lib.logging_config import get_logger
from hostdeploy.models.snapshot import (
    SNAPSHOT_ID_PATTERN,
    PruneReport,
    RetentionPolicy,
    Snapshot,
    SnapshotKind,
    format_snapshot_id,
    parse_snapshot_id,
)

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SnapshotStore:
    """Creates, lists, prunes and restores snapshots for one target."""

    def __init__(
        self,
        executor: RemoteExecutor,
        snapshot_root: str | None = None,
        timeout: float | None = None,
        page_size: int = SNAPSHOT_PAGE_SIZE,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the store.

        Args:
            executor: Executor bound to the target
            snapshot_root: Snapshot directory (default: the target's snapshot root)
            timeout: Timeout for copy commands (default: executor default)
            page_size: Manifests fetched per remote call while listing
            clock: Source of creation timestamps
        """
        self._executor = executor
        self.target = executor.target
        self.root = snapshot_root or executor.target.snapshot_root
        self._timeout = timeout
        self._page_size = max(1, page_size)
        self._clock = clock
        self._pinned: set[str] = set()

    # Pinning

    def pin(self, snapshot_id: str) -> None:
        """Mark a snapshot as the pending rollback target of an in-flight run."""
        self._pinned.add(snapshot_id)

    def unpin(self, snapshot_id: str) -> None:
        self._pinned.discard(snapshot_id)

    def is_pinned(self, snapshot_id: str) -> bool:
        return snapshot_id in self._pinned

    @contextmanager
    def pinned(self, snapshot_id: str) -> Iterator[None]:
        """Keep a snapshot pinned for the duration of the block."""
        already = self.is_pinned(snapshot_id)
        self.pin(snapshot_id)
        try:
            yield
        finally:
            if not already:
                self.unpin(snapshot_id)

    # Creation

    def create(
        self,
        source_path: str,
        label: str | None = None,
        kind: SnapshotKind = SnapshotKind.BACKUP,
    ) -> Snapshot:
        """Copy ``source_path`` into a new snapshot.

        Either the whole snapshot appears or nothing does.

        Raises:
            SnapshotError: source_missing, insufficient_space or copy_failed
        """
        source = shlex.quote(source_path)
        exists = self._executor.execute(f"test -d {source}", check=False)
        if not exists.ok:
            raise SnapshotError(
                SnapshotErrorKind.SOURCE_MISSING,
                f"Cannot snapshot {source_path}: directory does not exist",
            )

        size_kb = self._check_space(source_path)
        created_at = self._next_timestamp()
        snapshot = Snapshot(
            id=format_snapshot_id(kind, created_at),
            kind=kind,
            source_path=source_path,
            size_bytes=size_kb * 1024,
            created_at=created_at,
            label=label,
        )

        tmp_dir = self._path(f"{SNAPSHOT_TMP_PREFIX}{snapshot.id}")
        final_dir = self._path(snapshot.id)
        data_dir = posixpath.join(tmp_dir, SNAPSHOT_DATA_DIR)
        manifest = posixpath.join(tmp_dir, SNAPSHOT_MANIFEST)

        logger.info(f"Creating snapshot {snapshot.id} of {source_path}")
        try:
            self._executor.execute(
                f"rm -rf {shlex.quote(tmp_dir)} && mkdir -p {shlex.quote(tmp_dir)} "
                f"&& cp -a {source} {shlex.quote(data_dir)}",
                timeout=self._timeout,
            )
            self._executor.execute(
                f"printf '%s' {shlex.quote(snapshot.model_dump_json())} "
                f"> {shlex.quote(manifest)}"
            )
            self._executor.execute(
                f"mv -T {shlex.quote(tmp_dir)} {shlex.quote(final_dir)}"
            )
        except TransportError as exc:
            self._discard(tmp_dir)
            raise SnapshotError(
                SnapshotErrorKind.COPY_FAILED,
                f"Failed to create snapshot {snapshot.id}: {exc.message}",
            ) from exc

        logger.info(f"Snapshot {snapshot.id} created ({snapshot.size_bytes} bytes)")
        return snapshot

    def _check_space(self, source_path: str) -> int:
        """Return the source size in KiB, failing when the root lacks room."""
        root = shlex.quote(self.root)
        try:
            result = self._executor.execute(
                f"mkdir -p {root} && du -sk {shlex.quote(source_path)} | cut -f1 "
                f"&& df -Pk {root} | awk 'NR==2 {{print $4}}'",
                timeout=self._timeout,
            )
        except TransportError as exc:
            raise SnapshotError(
                SnapshotErrorKind.COPY_FAILED,
                f"Unable to measure {source_path}: {exc.message}",
            ) from exc

        lines = result.stdout.split()
        try:
            size_kb, available_kb = int(lines[0]), int(lines[1])
        except (IndexError, ValueError):
            logger.warning(f"Could not parse disk usage output: {result.stdout!r}")
            return 0

        if available_kb < size_kb:
            raise SnapshotError(
                SnapshotErrorKind.INSUFFICIENT_SPACE,
                f"Snapshot of {source_path} needs {size_kb} KiB but only "
                f"{available_kb} KiB are free under {self.root}",
            )
        return size_kb

    def _next_timestamp(self) -> datetime:
        """Clock time, bumped past the newest existing snapshot if needed."""
        now = self._clock()
        newest = max(
            (created_at for _, created_at, _ in self._list_ids()), default=None
        )
        if newest is not None and now <= newest:
            now = newest + timedelta(microseconds=1)
        return now

    # Listing

    def _list_ids(self) -> list[tuple[str, datetime, SnapshotKind]]:
        root = shlex.quote(self.root)
        result = self._executor.execute(
            f"if [ -d {root} ]; then ls -1A {root}; fi", check=False
        )
        entries = []
        for name in result.stdout.splitlines():
            parsed = parse_snapshot_id(name.strip())
            if parsed is not None:
                kind, created_at = parsed
                entries.append((name.strip(), created_at, kind))
        return entries

    def list(self) -> Iterator[Snapshot]:
        """Yield completed snapshots, newest first.

        Manifests are fetched lazily, one page per remote call. Each call
        starts a fresh enumeration.
        """
        entries = sorted(self._list_ids(), key=lambda e: (e[1], e[0]), reverse=True)
        for start in range(0, len(entries), self._page_size):
            page = [entry[0] for entry in entries[start : start + self._page_size]]
            yield from self._read_manifests(page)

    def _read_manifests(self, snapshot_ids: list[str]) -> Iterator[Snapshot]:
        names = " ".join(shlex.quote(snapshot_id) for snapshot_id in snapshot_ids)
        command = (
            f"cd {shlex.quote(self.root)} && for id in {names}; do "
            f"printf '%s\\t' \"$id\"; cat \"$id/{SNAPSHOT_MANIFEST}\" 2>/dev/null; "
            f"echo; done"
        )
        result = self._executor.execute(command, check=False)
        manifests: dict[str, str] = {}
        for line in result.stdout.splitlines():
            snapshot_id, _, manifest = line.partition("\t")
            if manifest.strip():
                manifests[snapshot_id] = manifest
        for snapshot_id in snapshot_ids:
            manifest = manifests.get(snapshot_id)
            if manifest is None:
                continue
            try:
                yield Snapshot.model_validate_json(manifest)
            except ValidationError:
                logger.warning(f"Skipping snapshot {snapshot_id}: invalid manifest")

    def get(self, snapshot_id: str) -> Snapshot:
        """Return a completed snapshot by id.

        Raises:
            SnapshotNotFoundError: If no such snapshot exists
        """
        if not SNAPSHOT_ID_PATTERN.match(snapshot_id):
            raise SnapshotNotFoundError(snapshot_id)
        manifest = posixpath.join(self._path(snapshot_id), SNAPSHOT_MANIFEST)
        result = self._executor.execute(f"cat {shlex.quote(manifest)}", check=False)
        if not result.ok or not result.stdout.strip():
            raise SnapshotNotFoundError(snapshot_id)
        try:
            return Snapshot.model_validate_json(result.stdout)
        except ValidationError as exc:
            raise SnapshotNotFoundError(
                snapshot_id, f"Snapshot {snapshot_id} has an invalid manifest"
            ) from exc

    def latest(self, kind: SnapshotKind | None = SnapshotKind.BACKUP) -> Snapshot | None:
        """Return the newest snapshot of a kind (any kind when None)."""
        for snapshot in self.list():
            if kind is None or snapshot.kind == kind:
                return snapshot
        return None

    # Retention

    def prune(self, policy: RetentionPolicy | None = None) -> PruneReport:
        """Delete snapshots beyond ``policy.keep``, oldest first.

        Pinned snapshots are never deleted. Each deletion is best-effort: a
        failure is logged and reported, and pruning continues.
        """
        policy = policy or RetentionPolicy()
        snapshots = list(self.list())
        report = PruneReport(retained=[s.id for s in snapshots[: policy.keep]])

        for snapshot in reversed(snapshots[policy.keep :]):
            if self.is_pinned(snapshot.id):
                logger.info(f"Keeping pinned snapshot {snapshot.id}")
                report.skipped_pinned.append(snapshot.id)
                report.retained.append(snapshot.id)
                continue
            try:
                self.delete(snapshot.id)
            except TransportError as exc:
                logger.warning(f"Failed to delete snapshot {snapshot.id}: {exc.message}")
                report.failures[snapshot.id] = exc.message
                report.retained.append(snapshot.id)
            else:
                report.deleted.append(snapshot.id)

        if report.deleted:
            logger.info(f"Pruned {len(report.deleted)} snapshot(s)")
        return report

    def delete(self, snapshot_id: str) -> None:
        """Hide a snapshot by renaming it, then remove it.

        Raises:
            SnapshotNotFoundError: If the id is malformed
            TransportError: If the removal fails
        """
        if not SNAPSHOT_ID_PATTERN.match(snapshot_id):
            raise SnapshotNotFoundError(snapshot_id)
        doomed = self._path(f"{SNAPSHOT_TMP_PREFIX}delete-{snapshot_id}")
        self._executor.execute(
            f"mv -T {shlex.quote(self._path(snapshot_id))} {shlex.quote(doomed)} "
            f"&& rm -rf {shlex.quote(doomed)}",
            timeout=self._timeout,
        )

    # Restore

    def safety_snapshot(
        self, snapshot_id: str, destination: str | None = None
    ) -> Snapshot | None:
        """Snapshot what restoring ``snapshot_id`` over ``destination`` would replace.

        Returns:
            The safety snapshot, or None when the destination does not exist

        Raises:
            SnapshotError: If the safety snapshot cannot be created
        """
        destination = destination or self._executor.target.deploy_root
        if not self._executor.execute(
            f"test -d {shlex.quote(destination)}", check=False
        ).ok:
            logger.warning(f"{destination} does not exist; no safety snapshot taken")
            return None
        return self.create(
            destination,
            label=f"before restoring {snapshot_id}",
            kind=SnapshotKind.PRE_ROLLBACK,
        )

    def restore(
        self,
        snapshot_id: str,
        destination: str | None = None,
        take_safety: bool = True,
    ) -> Snapshot | None:
        """Replace ``destination`` with the contents of a snapshot.

        Unless ``take_safety`` is false, a safety snapshot of the current
        destination is taken first, so the restore itself can be undone.
        If the swap fails the previous destination is put back.

        Returns:
            The safety snapshot, or None when none was taken

        Raises:
            SnapshotNotFoundError: If the snapshot does not exist
            SnapshotError: If the safety snapshot or the copy fails
        """
        snapshot = self.get(snapshot_id)
        destination = destination or self._executor.target.deploy_root
        dest = shlex.quote(destination)

        safety = self.safety_snapshot(snapshot.id, destination) if take_safety else None

        with self.pinned(snapshot.id):
            data_dir = posixpath.join(self._path(snapshot.id), SNAPSHOT_DATA_DIR)
            staging = shlex.quote(f"{destination}.hostdeploy-restore")
            previous = shlex.quote(f"{destination}.hostdeploy-previous")
            logger.info(f"Restoring {snapshot.id} to {destination}")
            try:
                self._executor.execute(
                    f"rm -rf {staging} && cp -a {shlex.quote(data_dir)} {staging}",
                    timeout=self._timeout,
                )
                self._executor.execute(
                    f"rm -rf {previous} && if [ -d {dest} ]; then mv -T {dest} "
                    f"{previous}; fi && {{ mv -T {staging} {dest} || "
                    f"{{ [ -d {previous} ] && mv -T {previous} {dest}; false; }}; }} "
                    f"&& rm -rf {previous}",
                    timeout=self._timeout,
                )
            except TransportError as exc:
                self._discard(f"{destination}.hostdeploy-restore")
                raise SnapshotError(
                    SnapshotErrorKind.RESTORE_FAILED,
                    f"Failed to restore {snapshot.id} to {destination}: {exc.message}",
                ) from exc

        return safety

    def _path(self, name: str) -> str:
        return posixpath.join(self.root, name)

    def _discard(self, path: str) -> None:
        try:
            self._executor.execute(f"rm -rf {shlex.quote(path)}", check=False)
        except TransportError as exc:
            logger.warning(f"Could not clean up {path}: {exc.message}")
