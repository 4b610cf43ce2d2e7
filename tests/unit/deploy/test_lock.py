"""Tests for TargetLock and CancellationToken."""

from __future__ import annotations

from pathlib import Path

import pytest

from hostdeploy.deploy.executor import LocalExecutor
from hostdeploy.deploy.lock import CancellationToken, TargetLock
from hostdeploy.lib.errors import AlreadyInProgressError


@pytest.mark.unit
class TestTargetLock:
    """Tests for per-target mutual exclusion."""

    def test_second_holder_fails_fast(self, local_executor: LocalExecutor) -> None:
        """A second run on the same target is rejected, not queued."""
        lock = TargetLock(local_executor)

        with lock.hold(owner="first"):
            with pytest.raises(AlreadyInProgressError) as exc_info:
                with TargetLock(local_executor).hold(owner="second"):
                    pass

        assert local_executor.target.identity in str(exc_info.value)

    def test_marker_created_and_removed(self, local_executor: LocalExecutor) -> None:
        """The remote marker exists only while the lock is held."""
        marker = Path(local_executor.target.lock_path)

        with TargetLock(local_executor).hold(owner="ci job 42"):
            assert marker.is_dir()
            assert "ci job 42" in (marker / "owner").read_text()

        assert not marker.exists()

    def test_released_when_block_raises(self, local_executor: LocalExecutor) -> None:
        """An exception inside the block still releases both locks."""
        lock = TargetLock(local_executor)

        with pytest.raises(RuntimeError):
            with lock.hold():
                raise RuntimeError("boom")

        with lock.hold():
            pass
        assert not Path(local_executor.target.lock_path).exists()

    def test_marker_from_other_process(self, local_executor: LocalExecutor) -> None:
        """A marker left by another process reports its holder."""
        marker = Path(local_executor.target.lock_path)
        marker.mkdir(parents=True)
        (marker / "owner").write_text("deploy@ci-runner pid=4242\n")

        with pytest.raises(AlreadyInProgressError) as exc_info:
            with TargetLock(local_executor).hold():
                pass

        assert exc_info.value.holder == "deploy@ci-runner pid=4242"
        assert marker.is_dir()

    def test_local_only_lock(self, fake_executor) -> None:
        """With remote locking disabled no commands are issued."""
        lock = TargetLock(fake_executor, remote=False)

        with lock.hold():
            with pytest.raises(AlreadyInProgressError):
                with lock.hold():
                    pass

        assert fake_executor.commands == []


@pytest.mark.unit
class TestCancellationToken:
    """Tests for CancellationToken."""

    def test_cancel(self) -> None:
        """Cancelling sets the flag and keeps the reason."""
        token = CancellationToken()
        assert not token.cancelled

        token.cancel("SIGTERM")

        assert token.cancelled
        assert token.reason == "SIGTERM"
