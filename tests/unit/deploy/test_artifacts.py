"""Tests for ArtifactSync."""

from __future__ import annotations

from pathlib import Path

import pytest

from hostdeploy.deploy.artifacts import ArtifactSync
from hostdeploy.deploy.executor import LocalExecutor
from hostdeploy.lib.errors import ArtifactSyncError
from hostdeploy.models.config import ArtifactConfig
from hostdeploy.models.outcome import DeploymentMode
from hostdeploy.models.plan import ComponentSelection

REPO = ArtifactConfig(
    repository="https://github.com/example/webapp.git",
    branch="release",
    steps=[
        {"name": "backend deps", "component": "backend", "workdir": "backend",
         "command": "npm ci --omit=dev"},
        {"name": "frontend build", "component": "frontend", "workdir": "frontend",
         "command": "npm ci && npm run build"},
        {"command": "sudo nginx -t"},
    ],
)


@pytest.mark.unit
class TestArtifactSync:
    """Tests for syncing and building."""

    def test_fresh_clones(self, fake_executor) -> None:
        """A fresh deploy clones the branch into the deployment root."""
        ArtifactSync(fake_executor, REPO).sync(DeploymentMode.FRESH)

        assert fake_executor.commands == [
            "git clone --branch release https://github.com/example/webapp.git "
            "/home/ubuntu/webapp"
        ]

    def test_update_fetches_and_resets(self, fake_executor) -> None:
        """An update fetches the branch and hard-resets to it."""
        ArtifactSync(fake_executor, REPO).sync(DeploymentMode.UPDATE)

        assert fake_executor.commands == [
            "git -C /home/ubuntu/webapp fetch origin release "
            "&& git -C /home/ubuntu/webapp reset --hard origin/release"
        ]

    def test_no_repository_is_a_no_op(self, fake_executor) -> None:
        """Without a repository the code on the target is used as-is."""
        ArtifactSync(fake_executor, ArtifactConfig()).sync(DeploymentMode.UPDATE)

        assert fake_executor.commands == []

    def test_no_repository_fresh_creates_root(self, fake_executor) -> None:
        """A fresh deploy without a repository only creates the deployment root."""
        ArtifactSync(fake_executor, ArtifactConfig()).sync(DeploymentMode.FRESH)

        assert fake_executor.commands == ["mkdir -p /home/ubuntu/webapp"]

    def test_git_failure(self, fake_executor) -> None:
        """git errors become ArtifactSyncError."""
        fake_executor.on("git -C", exit_code=128, stderr="fatal: couldn't find remote ref")

        with pytest.raises(ArtifactSyncError) as exc_info:
            ArtifactSync(fake_executor, REPO).sync(DeploymentMode.UPDATE)

        assert exc_info.value.step == "git update"

    @pytest.mark.parametrize(
        ("components", "expected"),
        [
            (ComponentSelection.BOTH, ["backend deps", "frontend build", "sudo"]),
            (ComponentSelection.BACKEND, ["backend deps", "sudo"]),
            (ComponentSelection.FRONTEND, ["frontend build", "sudo"]),
        ],
    )
    def test_build_filters_by_component(
        self, fake_executor, components, expected
    ) -> None:
        """Steps tied to an unselected component are skipped."""
        ran = ArtifactSync(fake_executor, REPO).build(components)

        assert ran == expected

    def test_build_runs_in_workdir(self, fake_executor) -> None:
        """Steps run from their working directory under the deployment root."""
        ArtifactSync(fake_executor, REPO).build(ComponentSelection.BACKEND)

        assert fake_executor.commands[0] == (
            "cd /home/ubuntu/webapp/backend && npm ci --omit=dev"
        )
        assert fake_executor.commands[1] == "cd /home/ubuntu/webapp && sudo nginx -t"

    def test_build_stops_at_first_failure(self, fake_executor) -> None:
        """A failing step stops the build."""
        fake_executor.on("npm ci --omit=dev", exit_code=1)

        with pytest.raises(ArtifactSyncError) as exc_info:
            ArtifactSync(fake_executor, REPO).build(ComponentSelection.BOTH)

        assert exc_info.value.step == "backend deps"
        assert not fake_executor.ran("npm run build")

    def test_build_on_local_target(self, local_executor: LocalExecutor) -> None:
        """Build steps run for real against a local deployment root."""
        root = Path(local_executor.target.deploy_root)
        root.mkdir()
        config = ArtifactConfig(steps=[{"name": "stamp", "command": "echo built > BUILD"}])

        ArtifactSync(local_executor, config).build(ComponentSelection.BOTH)

        assert (root / "BUILD").read_text() == "built\n"

    def test_current_revision(self, fake_executor) -> None:
        """The short revision is read from git; failures give None."""
        fake_executor.on("rev-parse", stdout="a1b2c3d\n")
        assert ArtifactSync(fake_executor, REPO).current_revision() == "a1b2c3d"

        fake_executor.on("rev-parse", exit_code=128)
        assert ArtifactSync(fake_executor, REPO).current_revision() is None
