"""Pytest configuration and shared fixtures for hostdeploy tests."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Generator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from hostdeploy.deploy.executor import CommandResult, LocalExecutor, RemoteExecutor
from hostdeploy.lib.errors import TransportError
from hostdeploy.models.config import DeployConfig
from hostdeploy.models.target import Target, TransportType


@dataclass
class _Rule:
    fragment: str
    result: CommandResult | None
    error: TransportError | None
    times: int | None


class FakeExecutor(RemoteExecutor):
    """Scripted executor: matches command fragments to canned results.

    The most recently registered matching rule wins; unmatched commands
    succeed with empty output. Every command is recorded in ``commands``.
    """

    def __init__(self, target: Target) -> None:
        super().__init__(target, default_timeout=30)
        self.commands: list[str] = []
        self._rules: list[_Rule] = []
        self.closed = False

    def on(
        self,
        fragment: str,
        exit_code: int = 0,
        stdout: str = "",
        stderr: str = "",
        raises: TransportError | None = None,
        times: int | None = None,
    ) -> FakeExecutor:
        result = None if raises else CommandResult(exit_code, stdout, stderr)
        self._rules.insert(0, _Rule(fragment, result, raises, times))
        return self

    def ran(self, fragment: str) -> bool:
        return any(fragment in command for command in self.commands)

    def count(self, fragment: str) -> int:
        return sum(fragment in command for command in self.commands)

    def _run(self, command: str, timeout: float) -> CommandResult:
        self.commands.append(command)
        for rule in self._rules:
            if rule.fragment not in command:
                continue
            if rule.times is not None:
                if rule.times == 0:
                    continue
                rule.times -= 1
            if rule.error is not None:
                raise rule.error
            assert rule.result is not None
            return rule.result
        return CommandResult(0, "", "")

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def temp_dir() -> Generator[Path]:
    """Create a temporary directory for test file operations.

    Yields:
        Path to temporary directory

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def isolated_env() -> Generator[dict[str, str]]:
    """Provide isolated environment variables for testing.

    Saves current environment and restores after test.
    """
    original_env = os.environ.copy()
    yield original_env
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def ssh_target() -> Target:
    """A remote target as a CI job would configure it."""
    return Target(
        name="production",
        host="203.0.113.10",
        user="ubuntu",
        key_file="~/.ssh/deploy.pem",
        deploy_root="/home/ubuntu/webapp",
    )


@pytest.fixture
def fake_executor(ssh_target: Target) -> FakeExecutor:
    """Scripted executor bound to the SSH target."""
    return FakeExecutor(ssh_target)


@pytest.fixture
def local_target(tmp_path: Path) -> Target:
    """A target whose deployment root lives under tmp_path."""
    return Target(
        name="local",
        host="localhost",
        deploy_root=str(tmp_path / "app"),
        transport=TransportType.LOCAL,
    )


@pytest.fixture
def local_executor(local_target: Target) -> LocalExecutor:
    """Executor running real shell commands against tmp_path."""
    return LocalExecutor(local_target, default_timeout=30)


@pytest.fixture
def run_dir(tmp_path: Path) -> Path:
    """Directory for service marker files, outside the deployment root."""
    path = tmp_path / "run"
    path.mkdir()
    return path


def command_service(name: str, run_dir: Path, **overrides: Any) -> dict[str, Any]:
    """Service config driven by marker files: running means the file exists."""
    marker = run_dir / f"{name}.running"
    service: dict[str, Any] = {
        "name": name,
        "manager": "command",
        "start_command": f"touch {marker}",
        "stop_command": f"rm {marker}",
        "status_command": f"test -f {marker}",
        "health": {"type": "process"},
    }
    service.update(overrides)
    return service


@pytest.fixture
def local_config(local_target: Target, run_dir: Path) -> DeployConfig:
    """Configuration with one backend and one frontend service on local_target."""
    return DeployConfig(
        target=local_target,
        services=[
            command_service("api", run_dir, component="backend"),
            command_service("web", run_dir, component="frontend"),
        ],
        artifacts={"steps": [{"name": "build", "command": "echo built > BUILD"}]},
        health={"max_attempts": 3, "backoff": {"delay": 0}},
        retention={"keep": 5},
    )


@pytest.fixture
def make_fake_executor():
    """Factory for scripted executors bound to any target."""
    return FakeExecutor


@pytest.fixture
def service_factory():
    """Factory building marker-file service configs."""
    return command_service


@pytest.fixture(autouse=True)
def reset_hostdeploy_logging() -> Generator[None]:
    """Undo setup_logging() so caplog sees hostdeploy records in every test."""
    yield
    logger = logging.getLogger("hostdeploy")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
