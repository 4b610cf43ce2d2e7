"""Remote command execution on a deployment target.

``RemoteExecutor`` is the leaf every other component builds on. It runs one
shell command on the bound target with a finite timeout and classifies
failures into ``TransportError`` kinds. It never retries: retry policy belongs
to the callers.
"""

from __future__ import annotations

import os
import socket
import subprocess  # nosec B404
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from types import TracebackType
from typing import TYPE_CHECKING

import paramiko

from hostdeploy.config.defaults import DEFAULT_TIMEOUTS
from hostdeploy.lib.errors import ConfigError, TransportError, TransportErrorKind
from hostdeploy.lib.logging_config import get_logger
from hostdeploy.models.target import Target, TransportType

if TYPE_CHECKING:
    from paramiko.channel import Channel

logger = get_logger(__name__)

# Poll interval while waiting for a remote command to exit
_POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class CommandResult:
    """Exit status and captured output of a command."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RemoteExecutor(ABC):
    """Executes shell commands on a single target.

    Example:
        >>> with create_executor(target) as executor:
        ...     result = executor.execute("test -d /srv/app", check=False)
        ...     print(result.ok)
    """

    def __init__(
        self, target: Target, default_timeout: float = DEFAULT_TIMEOUTS["command"]
    ) -> None:
        if default_timeout <= 0:
            raise ValueError("default_timeout must be positive")
        self.target = target
        self.default_timeout = default_timeout

    def execute(
        self, command: str, timeout: float | None = None, check: bool = True
    ) -> CommandResult:
        """Run a command on the target.

        Args:
            command: Shell command line
            timeout: Seconds before the command is abandoned (default: executor default)
            check: Raise TransportError(non_zero_exit) on a non-zero exit status

        Returns:
            CommandResult with exit code and captured output

        Raises:
            TransportError: On timeout, connection or authentication failure,
                or a non-zero exit status when ``check`` is set
        """
        effective_timeout = self.default_timeout if timeout is None else timeout
        if effective_timeout <= 0:
            raise ValueError("timeout must be positive")

        full_command = self._with_prelude(command)
        logger.debug(f"[{self.target.name}] $ {command}")
        result = self._run(full_command, effective_timeout)
        logger.debug(f"[{self.target.name}] exit={result.exit_code}")

        if check and not result.ok:
            stderr = result.stderr.strip()
            raise TransportError(
                TransportErrorKind.NON_ZERO_EXIT,
                f"Command exited with status {result.exit_code}: {command}"
                + (f"\n{stderr}" if stderr else ""),
                command=command,
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        return result

    def _with_prelude(self, command: str) -> str:
        if not self.target.shell_prelude:
            return command
        return f"{self.target.shell_prelude}\n{command}"

    @abstractmethod
    def _run(self, command: str, timeout: float) -> CommandResult:
        """Run the full command line and return its result regardless of exit code."""

    def close(self) -> None:
        """Release transport resources."""

    def __enter__(self) -> RemoteExecutor:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


class LocalExecutor(RemoteExecutor):
    """Runs commands on the machine hostdeploy itself runs on.

    Used when the CI agent lives on the target host, and in tests.
    """

    def _run(self, command: str, timeout: float) -> CommandResult:
        try:
            completed = subprocess.run(  # noqa: S603  # nosec B603 B607
                ["bash", "-c", command],  # noqa: S607
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise TransportError(
                TransportErrorKind.TIMEOUT,
                f"Command timed out after {timeout:g}s: {command}",
                command=command,
            ) from exc
        except OSError as exc:
            raise TransportError(
                TransportErrorKind.CONNECTION_REFUSED,
                f"Unable to spawn local shell: {exc}",
                command=command,
            ) from exc
        return CommandResult(completed.returncode, completed.stdout, completed.stderr)


class SSHExecutor(RemoteExecutor):
    """Runs commands over SSH with paramiko.

    The connection is opened lazily on the first command and reused until
    ``close()``.
    """

    def __init__(
        self,
        target: Target,
        default_timeout: float = DEFAULT_TIMEOUTS["command"],
        connect_timeout: float = DEFAULT_TIMEOUTS["connect"],
    ) -> None:
        super().__init__(target, default_timeout)
        self.connect_timeout = connect_timeout
        self._client: paramiko.SSHClient | None = None

    def _connect(self) -> paramiko.SSHClient:
        if self._client is not None:
            return self._client

        password = None
        if self.target.password_env:
            password = os.environ.get(self.target.password_env)
            if password is None:
                raise ConfigError(
                    "target.password_env",
                    f"Environment variable '{self.target.password_env}' is not set",
                )
        key_filename = (
            os.path.expanduser(self.target.key_file) if self.target.key_file else None
        )

        client = paramiko.SSHClient()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())  # nosec B507
        try:
            client.connect(
                hostname=self.target.host,
                port=self.target.port,
                username=self.target.user,
                password=password,
                key_filename=key_filename,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
            )
        except paramiko.AuthenticationException as exc:
            client.close()
            raise TransportError(
                TransportErrorKind.AUTH_FAILURE,
                f"Authentication failed for {self.target.user}@{self.target.host}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            client.close()
            raise TransportError(
                TransportErrorKind.TIMEOUT,
                f"Timed out connecting to {self.target.host}:{self.target.port}",
            ) from exc
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise TransportError(
                TransportErrorKind.CONNECTION_REFUSED,
                f"Unable to connect to {self.target.host}:{self.target.port}: {exc}",
            ) from exc

        self._client = client
        return client

    def _run(self, command: str, timeout: float) -> CommandResult:
        client = self._connect()
        try:
            _, stdout, stderr = client.exec_command(command, timeout=timeout)
            channel = stdout.channel
            out, err = self._collect(channel, timeout, command)
            exit_code = channel.recv_exit_status()
        except socket.timeout as exc:
            raise TransportError(
                TransportErrorKind.TIMEOUT,
                f"Command timed out after {timeout:g}s: {command}",
                command=command,
            ) from exc
        except (paramiko.SSHException, OSError) as exc:
            self.close()
            raise TransportError(
                TransportErrorKind.CONNECTION_REFUSED,
                f"SSH session to {self.target.host} failed: {exc}",
                command=command,
            ) from exc
        return CommandResult(exit_code, out, err)

    @staticmethod
    def _collect(channel: Channel, timeout: float, command: str) -> tuple[str, str]:
        """Drain stdout/stderr until the command exits or the deadline passes."""
        deadline = time.monotonic() + timeout
        out_chunks: list[bytes] = []
        err_chunks: list[bytes] = []
        while True:
            received = False
            while channel.recv_ready():
                out_chunks.append(channel.recv(32768))
                received = True
            while channel.recv_stderr_ready():
                err_chunks.append(channel.recv_stderr(32768))
                received = True
            if channel.exit_status_ready() and not (
                channel.recv_ready() or channel.recv_stderr_ready()
            ):
                break
            if time.monotonic() > deadline:
                channel.close()
                raise TransportError(
                    TransportErrorKind.TIMEOUT,
                    f"Command timed out after {timeout:g}s: {command}",
                    command=command,
                )
            if not received:
                time.sleep(_POLL_INTERVAL)
        return (
            b"".join(out_chunks).decode("utf-8", errors="replace"),
            b"".join(err_chunks).decode("utf-8", errors="replace"),
        )

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def create_executor(
    target: Target,
    command_timeout: float = DEFAULT_TIMEOUTS["command"],
    connect_timeout: float = DEFAULT_TIMEOUTS["connect"],
) -> RemoteExecutor:
    """Create the executor matching the target's transport."""
    if target.transport == TransportType.LOCAL:
        return LocalExecutor(target, command_timeout)
    if target.transport == TransportType.SSH:
        return SSHExecutor(target, command_timeout, connect_timeout)
    raise ConfigError("target.transport", f"Unsupported transport: {target.transport}")
