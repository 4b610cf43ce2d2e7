"""Per-target mutual exclusion and cooperative cancellation.

A run holds two locks for its whole duration: a process-wide lock keyed by
the target identity, and (optionally) a marker directory next to the
deployment root created with ``mkdir``, which is atomic on POSIX filesystems.
A second run fails fast with ``AlreadyInProgressError``; nothing queues.
"""

from __future__ import annotations

import getpass
import os
import shlex
import socket
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from hostdeploy.deploy.executor import RemoteExecutor
from hostdeploy.lib.errors import AlreadyInProgressError, TransportError
from hostdeploy.lib.logging_config import get_logger

logger = get_logger(__name__)

_registry_guard = threading.Lock()
_local_locks: dict[str, threading.Lock] = {}


def _local_lock(identity: str) -> threading.Lock:
    with _registry_guard:
        return _local_locks.setdefault(identity, threading.Lock())


def default_owner() -> str:
    """Describe the current process for lock markers."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()} pid={os.getpid()}"


class TargetLock:
    """Advisory lock on a target's deployment root."""

    def __init__(self, executor: RemoteExecutor, remote: bool = True) -> None:
        self._executor = executor
        self._remote = remote
        self.target = executor.target

    @contextmanager
    def hold(self, owner: str | None = None) -> Iterator[None]:
        """Hold the lock for the duration of the block.

        Raises:
            AlreadyInProgressError: If another run holds the lock
            TransportError: If the remote marker cannot be created
        """
        identity = self.target.identity
        local = _local_lock(identity)
        if not local.acquire(blocking=False):
            raise AlreadyInProgressError(identity, "another run in this process")

        try:
            if self._remote:
                self._acquire_remote(owner or default_owner())
            logger.debug(f"Lock acquired for {identity}")
            try:
                yield
            finally:
                if self._remote:
                    self._release_remote()
                logger.debug(f"Lock released for {identity}")
        finally:
            local.release()

    def _acquire_remote(self, owner: str) -> None:
        path = self.target.lock_path
        marker = shlex.quote(path)
        stamp = datetime.now(timezone.utc).isoformat()
        parent = shlex.quote(os.path.dirname(path) or "/")
        result = self._executor.execute(
            f"mkdir -p {parent} && mkdir {marker} 2>/dev/null "
            f"&& printf '%s\\n' {shlex.quote(f'{owner} since {stamp}')} "
            f"> {marker}/owner",
            check=False,
        )
        if result.ok:
            return

        holder = self._executor.execute(
            f"cat {marker}/owner 2>/dev/null", check=False
        ).stdout.strip()
        raise AlreadyInProgressError(
            self.target.identity,
            holder or f"unknown holder; remove {path} if no run is active",
        )

    def _release_remote(self) -> None:
        try:
            self._executor.execute(
                f"rm -rf {shlex.quote(self.target.lock_path)}", check=False
            )
        except TransportError as exc:
            logger.error(
                f"Failed to release lock {self.target.lock_path}: {exc.message}. "
                "Remove it manually before the next run."
            )


class CancellationToken:
    """Cooperative cancellation flag checked between stages."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
